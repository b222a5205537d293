"""Typed records parsed from on-disk state artifacts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Keys that map onto Event fields; everything else is metadata.
_EVENT_FIELDS = {"ts", "ts_epoch", "type", "issue", "stage", "duration_s", "result"}

UNKNOWN_AGE = 9999.0


def parse_ts(value: Any) -> float | None:
    """Parse an ISO-8601 timestamp (or epoch number) into epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        # Producers write UTC; naive stamps are treated as such.
        dt = dt.replace(tzinfo=UTC)
    return dt.timestamp()


def as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Event:
    """One append-only fact from the event log."""

    timestamp: float
    type: str
    ts: str = ""
    work_item_id: int | None = None
    stage: str = ""
    duration: float = 0.0
    result: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event | None:
        """Build an Event from a decoded log record. Returns None if unusable."""
        if not isinstance(data, dict):
            return None
        event_type = data.get("type")
        if not isinstance(event_type, str) or not event_type:
            return None
        ts = data.get("ts") if isinstance(data.get("ts"), str) else ""
        epoch = data.get("ts_epoch")
        timestamp = as_float(epoch) if epoch not in (None, "") else None
        if timestamp is None:
            timestamp = parse_ts(ts)
        if timestamp is None:
            return None
        item = as_int(data.get("issue"), 0) or None
        return cls(
            timestamp=timestamp,
            type=event_type,
            ts=ts,
            work_item_id=item,
            stage=str(data.get("stage") or ""),
            duration=as_float(data.get("duration_s")),
            result=str(data.get("result") or ""),
            metadata={k: v for k, v in data.items() if k not in _EVENT_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.metadata)
        data.update({"ts": self.ts, "ts_epoch": self.timestamp, "type": self.type})
        if self.work_item_id is not None:
            data["issue"] = self.work_item_id
        if self.stage:
            data["stage"] = self.stage
        if self.duration:
            data["duration_s"] = self.duration
        if self.result:
            data["result"] = self.result
        return data


@dataclass(frozen=True)
class ActiveJob:
    work_item_id: int
    title: str = ""
    stage: str = ""
    pid: int | None = None
    started_at: str = ""
    started_epoch: float | None = None
    worktree: str = ""
    repo: str = ""


@dataclass(frozen=True)
class QueuedItem:
    work_item_id: int
    title: str = ""
    score: float = 0.0


@dataclass(frozen=True)
class DaemonSnapshot:
    """Most-recent-wins state document written by the daemon process."""

    pid: int | None = None
    started_at: str = ""
    max_parallel: int = 2
    poll_interval: int = 30
    active_jobs: tuple[ActiveJob, ...] = ()
    queued: tuple[QueuedItem, ...] = ()

    def find_job(self, work_item_id: int) -> ActiveJob | None:
        for job in self.active_jobs:
            if job.work_item_id == work_item_id:
                return job
        return None


@dataclass(frozen=True)
class Heartbeat:
    """Per-agent liveness record. Staleness is derived from updated_at."""

    agent_id: str
    work_item_id: int = 0
    stage: str = ""
    updated_at: str = ""
    machine: str = "localhost"
    iteration: int = 0
    activity: str = ""
    memory_mb: float = 0.0
    cpu_pct: float = 0.0

    def age(self, now: float) -> float:
        epoch = parse_ts(self.updated_at)
        if epoch is None:
            return UNKNOWN_AGE
        return max(0.0, now - epoch)


def heartbeat_status(age: float) -> str:
    """Classify a heartbeat age: active (<30s), idle (30-120s), stale (>120s)."""
    if age > 120:
        return "stale"
    if age > 30:
        return "idle"
    return "active"


@dataclass(frozen=True)
class MachineRecord:
    name: str
    host: str
    role: str = "worker"
    max_workers: int = 4
    ssh_user: str = ""
    workdir: str = ""
    registered_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "host": self.host,
            "role": self.role,
            "max_workers": self.max_workers,
            "ssh_user": self.ssh_user,
            "workdir": self.workdir,
            "registered_at": self.registered_at,
        }


@dataclass(frozen=True)
class CostEntry:
    cost_usd: float
    ts_epoch: float
    model: str = ""
    stage: str = ""
    work_item_id: int | None = None


@dataclass(frozen=True)
class Budget:
    daily_budget_usd: float = 0.0
    enabled: bool = False


@dataclass(frozen=True)
class LogProgress:
    iteration: int = 0
    max_iterations: int = 20
    lines_written: int = 0
    tests_passing: bool = False
