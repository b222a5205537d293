"""Machine pool request bodies."""

from __future__ import annotations

from pydantic import BaseModel, Field


class MachineCreate(BaseModel):
    name: str = Field(min_length=1)
    host: str = Field(min_length=1)
    role: str = "worker"
    max_workers: int = Field(4, ge=1)
    ssh_user: str = ""
    workdir: str = ""


class MachineUpdate(BaseModel):
    host: str | None = None
    role: str | None = None
    max_workers: int | None = Field(None, ge=1)
    ssh_user: str | None = None
    workdir: str | None = None


class ScaleRequest(BaseModel):
    workers: int = Field(ge=1)


class JoinTokenRequest(BaseModel):
    label: str = ""
    max_workers: int = Field(4, ge=1)
