"""State aggregator.

Re-reads every state artifact and assembles one FleetState. Nothing is
cached between calls and nothing is written, so a read that races a
producer's write is corrected by the next pass.
"""

from __future__ import annotations

import os
import time
from collections import defaultdict
from collections.abc import Iterable
from datetime import UTC, datetime

from ..metrics.alerts import ClaimConflict, compute_alerts
from ..metrics.dora import DAY, compute_dora, is_failure, is_success
from ..metrics.history import today_spend
from ..stores.events_db import load_events
from ..stores.models import (
    ActiveJob,
    DaemonSnapshot,
    Event,
    Heartbeat,
    as_float,
    as_int,
    heartbeat_status,
    parse_ts,
)
from ..stores.paths import StatePaths
from ..stores.readers import (
    read_budget,
    read_cost_entries,
    read_daemon_snapshot,
    read_health_cache,
    read_heartbeats,
    read_log_progress,
    read_machines,
    read_pause_flag,
)
from ..team.service import read_developers, team_view
from .models import (
    AgentInfo,
    CostInfo,
    DaemonInfo,
    FleetMetrics,
    FleetState,
    MachineInfo,
    Pipeline,
    QueueEntry,
    ScaleInfo,
)

RECENT_EVENTS = 25


def iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, UTC).isoformat().replace("+00:00", "Z")


def _elapsed(since: float | None, now: float) -> int:
    if since is None:
        return 0
    return max(0, int(now - since))


def _daemon_info(snapshot: DaemonSnapshot | None, paused: bool, now: float) -> DaemonInfo:
    if snapshot is None:
        return DaemonInfo(paused=paused)
    return DaemonInfo(
        running=True,
        pid=snapshot.pid,
        uptime_s=_elapsed(parse_ts(snapshot.started_at), now),
        max_parallel=snapshot.max_parallel,
        poll_interval=snapshot.poll_interval,
        paused=paused,
    )


def _pipeline(
    job: ActiveJob, paths: StatePaths, stages_done: list[str], now: float
) -> Pipeline:
    progress = read_log_progress(paths.log_file(job.work_item_id))
    started = job.started_epoch if job.started_epoch is not None else parse_ts(job.started_at)
    return Pipeline(
        work_item_id=job.work_item_id,
        title=job.title,
        stage=job.stage or "build",
        elapsed_s=_elapsed(started, now),
        worktree=job.worktree or f"daemon-issue-{job.work_item_id}",
        iteration=progress.iteration,
        max_iterations=progress.max_iterations,
        stages_done=tuple(stages_done),
        lines_written=progress.lines_written,
        tests_passing=progress.tests_passing,
    )


def latest_scale(events: list[Event]) -> ScaleInfo:
    """Most recent autoscale decision; the last one in timestamp order wins."""
    latest: Event | None = None
    for event in events:
        if event.type == "daemon.scale":
            latest = event
    if latest is None:
        return ScaleInfo()
    meta = latest.metadata

    def opt_int(key: str) -> int | None:
        return as_int(meta[key]) if meta.get(key) is not None else None

    mem = meta.get("avail_mem_gb")

    return ScaleInfo(
        from_workers=opt_int("from"),
        to_workers=opt_int("to"),
        max_by_cpu=opt_int("max_by_cpu"),
        max_by_mem=opt_int("max_by_mem"),
        max_by_budget=opt_int("max_by_budget"),
        cpu_cores=opt_int("cpu_cores"),
        avail_mem_gb=as_float(mem) if mem is not None else None,
    )


def _agents(
    heartbeats: list[Heartbeat], snapshot: DaemonSnapshot | None, now: float
) -> tuple[AgentInfo, ...]:
    agents = []
    for hb in heartbeats:
        age = hb.age(now)
        job = snapshot.find_job(hb.work_item_id) if snapshot and hb.work_item_id else None
        started_at = job.started_at if job else hb.updated_at
        agents.append(
            AgentInfo(
                id=hb.agent_id,
                work_item_id=hb.work_item_id,
                title=job.title if job else "",
                machine=hb.machine,
                stage=hb.stage,
                iteration=hb.iteration,
                activity=hb.activity,
                memory_mb=hb.memory_mb,
                cpu_pct=hb.cpu_pct,
                status=heartbeat_status(age),
                heartbeat_age_s=int(age),
                started_at=started_at,
                elapsed_s=_elapsed(parse_ts(started_at), now),
            )
        )
    return tuple(agents)


def _machines(paths: StatePaths) -> tuple[MachineInfo, ...]:
    health = read_health_cache(paths.health_cache)
    machines = []
    for record in read_machines(paths.machines_file):
        cached = health.get(record.name, {})
        machines.append(
            MachineInfo(
                name=record.name,
                host=record.host,
                role=record.role,
                max_workers=record.max_workers,
                registered_at=record.registered_at,
                status=str(cached.get("status") or "unknown"),
                checked_at=as_float(cached["checked_at"]) if "checked_at" in cached else None,
            )
        )
    return tuple(machines)


async def aggregate(
    paths: StatePaths,
    *,
    now: float | None = None,
    lookback_days: int = 30,
    period_days: int = 30,
    claim_conflicts: Iterable[ClaimConflict] = (),
) -> FleetState:
    """Assemble a FleetState from the current on-disk state.

    Only events inside the lookback window are read. With a fixed `now`
    and no intervening writes, two calls serialise identically.
    """
    now = time.time() if now is None else now
    snapshot = read_daemon_snapshot(paths.daemon_state)
    events = await load_events(paths, now - max(lookback_days, period_days) * DAY)

    stages_done: dict[int, list[str]] = defaultdict(list)
    completed = 0
    failed = 0
    for event in events:
        if event.type == "stage.completed" and event.work_item_id:
            stages_done[event.work_item_id].append(event.stage)
        elif is_success(event):
            completed += 1
        elif is_failure(event):
            failed += 1

    pipelines = ()
    queue = ()
    if snapshot is not None:
        pipelines = tuple(
            _pipeline(job, paths, stages_done.get(job.work_item_id, []), now)
            for job in snapshot.active_jobs
        )
        queue = tuple(
            QueueEntry(work_item_id=q.work_item_id, title=q.title, score=q.score)
            for q in snapshot.queued
        )

    heartbeats = read_heartbeats(paths.heartbeat_dir)
    budget = read_budget(paths.budget_file)
    spent = today_spend(read_cost_entries(paths.costs_file), now)
    limit = budget.daily_budget_usd
    cost = CostInfo(
        today_spent=spent,
        daily_budget=limit,
        pct_used=round(spent / limit * 100, 2) if limit > 0 else 0.0,
    )

    developers = read_developers(paths.developers_file)
    paused = bool(read_pause_flag(paths.pause_flag).get("paused", False))

    return FleetState(
        timestamp=iso(now),
        daemon=_daemon_info(snapshot, paused, now),
        pipelines=pipelines,
        queue=queue,
        events=tuple(e.to_dict() for e in events[-RECENT_EVENTS:]),
        scale=latest_scale(events),
        metrics=FleetMetrics(cpu_cores=os.cpu_count() or 1, completed=completed, failed=failed),
        agents=_agents(heartbeats, snapshot, now),
        machines=_machines(paths),
        cost=cost,
        dora=compute_dora(events, now, period_days),
        alerts=tuple(
            compute_alerts(
                snapshot=snapshot,
                events=events,
                heartbeats=heartbeats,
                spent=spent,
                budget=limit,
                now=now,
                claim_conflicts=claim_conflicts,
            )
        ),
        team=team_view(developers, now) if developers else None,
    )
