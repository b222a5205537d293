"""Claim request bodies."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClaimRequest(BaseModel):
    issue: int = Field(gt=0)
    machine: str = Field(min_length=1)


class ReleaseRequest(BaseModel):
    issue: int = Field(gt=0)
    machine: str | None = None
