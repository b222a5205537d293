"""Operational alerts, recomputed on every pass and never stored.

The engine only recommends remediation actions; it never performs them.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..stores.models import DaemonSnapshot, Event, Heartbeat
from .dora import is_failure

WARNING = "warning"
CRITICAL = "critical"

STUCK_AFTER_S = 30 * 60
STALE_HEARTBEAT_S = 5 * 60
FAILURE_SPIKE_WINDOW_S = 3600
FAILURE_SPIKE_THRESHOLD = 3
QUEUE_WARNING = 10
QUEUE_CRITICAL = 20
BUDGET_WARNING_PCT = 80.0
BUDGET_CRITICAL_PCT = 95.0

_TRANSITIONS = {"pipeline.started", "stage.started", "stage.completed", "stage.failed"}
_SEVERITY_ORDER = {CRITICAL: 0, WARNING: 1}


@dataclass(frozen=True)
class Alert:
    type: str
    severity: str
    message: str
    work_item_id: int | None = None
    actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "actions": list(self.actions),
        }
        if self.work_item_id is not None:
            data["issue"] = self.work_item_id
        return data


@dataclass(frozen=True)
class ClaimConflict:
    """Two owners observed holding the same work item."""

    work_item_id: int
    owners: tuple[str, ...]


def _last_transitions(events: Iterable[Event]) -> dict[int, float]:
    last: dict[int, float] = {}
    for event in events:
        if event.work_item_id is not None and event.type in _TRANSITIONS:
            last[event.work_item_id] = event.timestamp
    return last


def stuck_alerts(
    snapshot: DaemonSnapshot | None, events: list[Event], now: float
) -> list[Alert]:
    if snapshot is None:
        return []
    last = _last_transitions(events)
    alerts: list[Alert] = []
    for job in snapshot.active_jobs:
        since = last.get(job.work_item_id, job.started_epoch)
        if since is None:
            continue
        idle = now - since
        if idle > STUCK_AFTER_S:
            alerts.append(
                Alert(
                    type="stuck_pipeline",
                    severity=WARNING,
                    message=(
                        f"Issue #{job.work_item_id} has not changed stage in "
                        f"{int(idle // 60)} minutes"
                    ),
                    work_item_id=job.work_item_id,
                    actions=("pause", "abort", "escalate"),
                )
            )
    return alerts


def budget_alerts(spent: float, limit: float) -> list[Alert]:
    if limit <= 0:
        return []
    pct = spent / limit * 100
    if pct > BUDGET_CRITICAL_PCT:
        severity = CRITICAL
    elif pct > BUDGET_WARNING_PCT:
        severity = WARNING
    else:
        return []
    return [
        Alert(
            type="budget_pressure",
            severity=severity,
            message=f"Daily spend ${spent:.2f} is {pct:.0f}% of ${limit:.2f} budget",
            actions=("pause", "escalate"),
        )
    ]


def queue_alerts(depth: int) -> list[Alert]:
    if depth > QUEUE_CRITICAL:
        severity = CRITICAL
    elif depth > QUEUE_WARNING:
        severity = WARNING
    else:
        return []
    return [
        Alert(
            type="queue_depth",
            severity=severity,
            message=f"{depth} work items queued",
            actions=("resume", "escalate"),
        )
    ]


def failure_spike_alerts(events: list[Event], now: float) -> list[Alert]:
    cutoff = now - FAILURE_SPIKE_WINDOW_S
    failures = sum(1 for e in events if cutoff <= e.timestamp <= now and is_failure(e))
    if failures <= FAILURE_SPIKE_THRESHOLD:
        return []
    return [
        Alert(
            type="failure_spike",
            severity=CRITICAL,
            message=f"{failures} pipeline failures in the last hour",
            actions=("pause", "escalate"),
        )
    ]


def heartbeat_alerts(heartbeats: list[Heartbeat], now: float) -> list[Alert]:
    alerts: list[Alert] = []
    for hb in heartbeats:
        age = hb.age(now)
        if age > STALE_HEARTBEAT_S:
            alerts.append(
                Alert(
                    type="stale_heartbeat",
                    severity=WARNING,
                    message=f"Agent {hb.agent_id} silent for {int(age // 60)} minutes",
                    work_item_id=hb.work_item_id or None,
                    actions=("abort", "escalate"),
                )
            )
    return alerts


def claim_conflict_alerts(conflicts: Iterable[ClaimConflict]) -> list[Alert]:
    return [
        Alert(
            type="double_claim",
            severity=CRITICAL,
            message=f"Issue #{c.work_item_id} claimed by {', '.join(c.owners)}",
            work_item_id=c.work_item_id,
            actions=("abort", "escalate"),
        )
        for c in conflicts
    ]


def compute_alerts(
    *,
    snapshot: DaemonSnapshot | None,
    events: list[Event],
    heartbeats: list[Heartbeat],
    spent: float,
    budget: float,
    now: float,
    claim_conflicts: Iterable[ClaimConflict] = (),
) -> list[Alert]:
    """All current alerts, critical first."""
    queue_depth = len(snapshot.queued) if snapshot else 0
    alerts = [
        *stuck_alerts(snapshot, events, now),
        *budget_alerts(spent, budget),
        *queue_alerts(queue_depth),
        *failure_spike_alerts(events, now),
        *heartbeat_alerts(heartbeats, now),
        *claim_conflict_alerts(claim_conflicts),
    ]
    return sorted(alerts, key=lambda a: (_SEVERITY_ORDER.get(a.severity, 9), a.type))
