"""Auth Pydantic models."""

from __future__ import annotations

from pydantic import BaseModel


class TokenLoginRequest(BaseModel):
    username: str = ""


class LoginInfo(BaseModel):
    auth_mode: str
    login_url: str = ""
