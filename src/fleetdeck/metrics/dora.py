"""DORA-style delivery grading over a trailing period.

Every metric always carries a grade. Zero-sample periods grade
conservatively for change failure rate (Low) and optimistically for
MTTR (Elite, nothing to recover from).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..stores.models import Event

ELITE = "Elite"
HIGH = "High"
MEDIUM = "Medium"
LOW = "Low"

DAY = 86400.0
HOUR = 3600.0


@dataclass(frozen=True)
class DoraMetric:
    value: float
    unit: str
    grade: str
    samples: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": round(self.value, 2),
            "unit": self.unit,
            "grade": self.grade,
            "samples": self.samples,
        }


@dataclass(frozen=True)
class DoraGrades:
    deploy_freq: DoraMetric
    lead_time: DoraMetric
    cfr: DoraMetric
    mttr: DoraMetric
    period_days: int = 30

    def to_dict(self) -> dict[str, Any]:
        return {
            "deploy_freq": self.deploy_freq.to_dict(),
            "lead_time": self.lead_time.to_dict(),
            "cfr": self.cfr.to_dict(),
            "mttr": self.mttr.to_dict(),
            "period_days": self.period_days,
        }


def grade_deploy_freq(per_day: float) -> str:
    if per_day >= 1:
        return ELITE
    if per_day >= 1 / 7:
        return HIGH
    if per_day >= 1 / 30:
        return MEDIUM
    return LOW


def grade_lead_time(hours: float | None) -> str:
    if hours is None:
        return LOW
    if hours < 1:
        return ELITE
    if hours < 24:
        return HIGH
    if hours < 168:
        return MEDIUM
    return LOW


def grade_cfr(percent: float | None) -> str:
    if percent is None:
        return LOW
    if percent < 5:
        return ELITE
    if percent < 10:
        return HIGH
    if percent < 15:
        return MEDIUM
    return LOW


def grade_mttr(hours: float | None) -> str:
    if hours is None:
        return ELITE
    if hours < 1:
        return ELITE
    if hours < 24:
        return HIGH
    if hours < 168:
        return MEDIUM
    return LOW


def is_success(event: Event) -> bool:
    return event.type == "pipeline.completed" and event.result == "success"


def is_failure(event: Event) -> bool:
    if event.type == "pipeline.failed":
        return True
    return event.type == "pipeline.completed" and event.result != "success"


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


def compute_dora(events: list[Event], now: float, period_days: int = 30) -> DoraGrades:
    """Grade the trailing period_days of events (events must be time-ordered)."""
    period_days = max(1, int(period_days))
    cutoff = now - period_days * DAY
    window = [e for e in events if cutoff <= e.timestamp <= now]

    succeeded = 0
    failed = 0
    lead_samples: list[float] = []
    recovery_samples: list[float] = []
    started: dict[int, float] = {}
    first_failure: dict[int, float] = {}

    for event in window:
        item = event.work_item_id
        if event.type == "pipeline.started" and item is not None:
            started[item] = event.timestamp
            continue
        if is_success(event):
            succeeded += 1
            if item is None:
                continue
            start = started.pop(item, None)
            if start is not None:
                lead_samples.append(max(0.0, event.timestamp - start))
            failed_at = first_failure.pop(item, None)
            if failed_at is not None:
                recovery_samples.append(max(0.0, event.timestamp - failed_at))
        elif is_failure(event):
            failed += 1
            if item is None:
                continue
            started.pop(item, None)
            first_failure.setdefault(item, event.timestamp)

    per_day = succeeded / period_days
    lead_hours = _mean(lead_samples)
    lead_hours = lead_hours / HOUR if lead_hours is not None else None
    total = succeeded + failed
    cfr = failed / total * 100 if total else None
    mttr_hours = _mean(recovery_samples)
    mttr_hours = mttr_hours / HOUR if mttr_hours is not None else None

    return DoraGrades(
        deploy_freq=DoraMetric(per_day, "per_day", grade_deploy_freq(per_day), succeeded),
        lead_time=DoraMetric(
            lead_hours or 0.0, "hours", grade_lead_time(lead_hours), len(lead_samples)
        ),
        cfr=DoraMetric(cfr or 0.0, "percent", grade_cfr(cfr), total),
        mttr=DoraMetric(
            mttr_hours or 0.0, "hours", grade_mttr(mttr_hours), len(recovery_samples)
        ),
        period_days=period_days,
    )
