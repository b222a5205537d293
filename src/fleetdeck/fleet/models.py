"""FleetState snapshot records and fleet control request bodies."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from pydantic import BaseModel

from ..metrics.alerts import Alert
from ..metrics.dora import DoraGrades


@dataclass(frozen=True)
class DaemonInfo:
    running: bool = False
    pid: int | None = None
    uptime_s: int = 0
    max_parallel: int = 2
    poll_interval: int = 30
    paused: bool = False


@dataclass(frozen=True)
class Pipeline:
    """An active job enriched with log progress and completed-stage history."""

    work_item_id: int
    title: str
    stage: str
    elapsed_s: int
    worktree: str
    iteration: int
    max_iterations: int
    stages_done: tuple[str, ...]
    lines_written: int
    tests_passing: bool


@dataclass(frozen=True)
class QueueEntry:
    work_item_id: int
    title: str = ""
    score: float = 0.0


@dataclass(frozen=True)
class ScaleInfo:
    """Latest autoscale decision from the event log."""

    from_workers: int | None = None
    to_workers: int | None = None
    max_by_cpu: int | None = None
    max_by_mem: int | None = None
    max_by_budget: int | None = None
    cpu_cores: int | None = None
    avail_mem_gb: float | None = None


@dataclass(frozen=True)
class FleetMetrics:
    cpu_cores: int
    completed: int = 0
    failed: int = 0


@dataclass(frozen=True)
class AgentInfo:
    id: str
    work_item_id: int
    title: str
    machine: str
    stage: str
    iteration: int
    activity: str
    memory_mb: float
    cpu_pct: float
    status: str
    heartbeat_age_s: int
    started_at: str
    elapsed_s: int


@dataclass(frozen=True)
class MachineInfo:
    name: str
    host: str
    role: str
    max_workers: int
    registered_at: str
    status: str = "unknown"
    checked_at: float | None = None


@dataclass(frozen=True)
class CostInfo:
    today_spent: float = 0.0
    daily_budget: float = 0.0
    pct_used: float = 0.0


@dataclass(frozen=True)
class FleetState:
    timestamp: str
    daemon: DaemonInfo
    pipelines: tuple[Pipeline, ...]
    queue: tuple[QueueEntry, ...]
    events: tuple[dict[str, Any], ...]
    scale: ScaleInfo
    metrics: FleetMetrics
    agents: tuple[AgentInfo, ...]
    machines: tuple[MachineInfo, ...]
    cost: CostInfo
    dora: DoraGrades
    alerts: tuple[Alert, ...] = ()
    team: dict[str, Any] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "timestamp": self.timestamp,
            "daemon": asdict(self.daemon),
            "pipelines": [asdict(p) for p in self.pipelines],
            "queue": [asdict(q) for q in self.queue],
            "events": list(self.events),
            "scale": asdict(self.scale),
            "metrics": asdict(self.metrics),
            "agents": [asdict(a) for a in self.agents],
            "machines": [asdict(m) for m in self.machines],
            "cost": asdict(self.cost),
            "dora": self.dora.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
        }
        if self.team is not None:
            data["team"] = self.team
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), default=str)

    def dedup_key(self) -> str:
        """Serialized state without the snapshot time and the running clocks.

        Two snapshots with the same key differ only in values that tick
        with the wall clock, so pushing the second one tells an observer
        nothing new.
        """
        data = self.to_dict()
        del data["timestamp"]
        data["daemon"] = _without_clocks(data["daemon"])
        data["pipelines"] = [_without_clocks(p) for p in data["pipelines"]]
        data["agents"] = [_without_clocks(a) for a in data["agents"]]
        return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


# Ages recomputed from `now` on every pass.
CLOCK_FIELDS = frozenset({"uptime_s", "elapsed_s", "heartbeat_age_s"})


def _without_clocks(record: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k not in CLOCK_FIELDS}


# -- Request bodies ----------------------------------------------------------


class InterventionRequest(BaseModel):
    message: str = ""


class BulkInterventionRequest(BaseModel):
    issues: list[int]
    action: str
    message: str = ""


class BrakeRequest(BaseModel):
    reason: str = "emergency brake"


class PauseRequest(BaseModel):
    reason: str = ""
