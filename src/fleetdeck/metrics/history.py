"""Historical rollups over the event log and cost ledger."""

from __future__ import annotations

from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

from ..stores.models import CostEntry, Event
from .dora import DAY, compute_dora, is_failure, is_success


def _date_key(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, UTC).strftime("%Y-%m-%d")


def metrics_history(events: list[Event], now: float, period_days: int = 30) -> dict[str, Any]:
    completed = 0
    failed = 0
    total_duration = 0.0
    completed_last_24h = 0
    stage_durations: dict[str, list[float]] = defaultdict(list)
    daily = {_date_key(now - i * DAY): {"completed": 0, "failed": 0} for i in range(6, -1, -1)}

    for event in events:
        if is_success(event) or is_failure(event):
            success = is_success(event)
            if success:
                completed += 1
                total_duration += event.duration
                if event.timestamp >= now - DAY:
                    completed_last_24h += 1
            else:
                failed += 1
            bucket = daily.get(_date_key(event.timestamp))
            if bucket is not None:
                bucket["completed" if success else "failed"] += 1
        elif event.type == "stage.completed" and event.stage:
            stage_durations[event.stage].append(event.duration)

    total = completed + failed
    return {
        "success_rate": round(completed / total * 100, 2) if total else 0,
        "avg_duration_s": round(total_duration / completed) if completed else 0,
        "throughput_per_hour": round(completed_last_24h / 24, 2),
        "total_completed": completed,
        "total_failed": failed,
        "stage_durations": {
            stage: round(sum(d) / len(d)) for stage, d in sorted(stage_durations.items())
        },
        "daily_counts": [{"date": day, **counts} for day, counts in sorted(daily.items())],
        "dora_grades": compute_dora(events, now, period_days).to_dict(),
    }


def stage_performance(events: list[Event], now: float, period_days: int = 7) -> list[dict]:
    cutoff = now - period_days * DAY
    durations: dict[str, list[float]] = defaultdict(list)
    for event in events:
        if event.type == "stage.completed" and event.stage and event.timestamp >= cutoff:
            durations[event.stage].append(event.duration)
    return [
        {
            "stage": stage,
            "avg_s": round(sum(d) / len(d)),
            "min_s": round(min(d)),
            "max_s": round(max(d)),
            "count": len(d),
        }
        for stage, d in sorted(durations.items())
    ]


def today_spend(entries: list[CostEntry], now: float) -> float:
    midnight = datetime.fromtimestamp(now, UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    cutoff = midnight.timestamp()
    return round(sum(e.cost_usd for e in entries if e.ts_epoch >= cutoff), 2)


def cost_breakdown(
    entries: list[CostEntry], budget: float, now: float, period_days: int = 7
) -> dict[str, Any]:
    cutoff = now - period_days * DAY
    by_model: dict[str, float] = defaultdict(float)
    by_stage: dict[str, float] = defaultdict(float)
    by_item: dict[int, float] = defaultdict(float)
    spent = 0.0
    for entry in entries:
        if entry.ts_epoch < cutoff:
            continue
        spent += entry.cost_usd
        by_model[entry.model or "unknown"] += entry.cost_usd
        by_stage[entry.stage or "unknown"] += entry.cost_usd
        if entry.work_item_id is not None:
            by_item[entry.work_item_id] += entry.cost_usd
    return {
        "by_model": {k: round(v, 2) for k, v in sorted(by_model.items())},
        "by_stage": {k: round(v, 2) for k, v in sorted(by_stage.items())},
        "by_issue": [
            {"issue": item, "cost": round(cost, 2)}
            for item, cost in sorted(by_item.items(), key=lambda kv: -kv[1])
        ],
        "budget": budget,
        "spent": round(spent, 2),
        "period_days": period_days,
    }
