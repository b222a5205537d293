"""Team request bodies."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ConnectHeartbeat(BaseModel):
    developer_id: str = Field(min_length=1)
    machine_name: str = Field(min_length=1)
    hostname: str = ""
    platform: str = ""
    daemon_running: bool = False
    daemon_pid: int | None = None
    active_jobs: list[Any] = []
    queued: list[Any] = []
    events: list[dict[str, Any]] = []
    timestamp: str = ""


class ConnectDisconnect(BaseModel):
    developer_id: str = Field(min_length=1)
    machine_name: str = Field(min_length=1)
