"""Best-effort readers for the shared state artifacts.

Every reader returns typed data or an empty default. Missing files,
unreadable files and malformed records all mean "no data yet".
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from .models import (
    ActiveJob,
    Budget,
    CostEntry,
    DaemonSnapshot,
    Event,
    Heartbeat,
    LogProgress,
    MachineRecord,
    QueuedItem,
    as_float,
    as_int,
    parse_ts,
)

logger = logging.getLogger(__name__)

_ITERATION_RE = re.compile(r"Iteration (\d+)/(\d+)")
_INSERTIONS_RE = re.compile(r"(\d+) insertions?\(\+\)")


def read_text(path: Path, default: str = "") -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return default


def read_json(path: Path) -> Any | None:
    """Decode a whole-file JSON document, or None if absent or malformed."""
    text = read_text(path)
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Malformed JSON in %s", path)
        return None


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Decode a newline-delimited JSON file line by line, skipping bad lines."""
    records: list[dict[str, Any]] = []
    for line in read_text(path).splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def sort_events(events: list[Event]) -> list[Event]:
    """Order by timestamp; ties keep arrival order (sort is stable)."""
    return sorted(events, key=lambda e: e.timestamp)


def read_event_log(path: Path, since_epoch: float | None = None) -> list[Event]:
    events: list[Event] = []
    for record in read_jsonl(path):
        event = Event.from_dict(record)
        if event is None:
            continue
        if since_epoch is not None and event.timestamp < since_epoch:
            continue
        events.append(event)
    return sort_events(events)


def _parse_job(raw: Any) -> ActiveJob | None:
    if not isinstance(raw, dict):
        return None
    item = as_int(raw.get("issue"))
    if not item:
        return None
    started_epoch = raw.get("started_epoch")
    pid = as_int(raw.get("pid")) or None
    return ActiveJob(
        work_item_id=item,
        title=str(raw.get("title") or ""),
        stage=str(raw.get("stage") or ""),
        pid=pid,
        started_at=str(raw.get("started_at") or ""),
        started_epoch=as_float(started_epoch) if started_epoch is not None else None,
        worktree=str(raw.get("worktree") or ""),
        repo=str(raw.get("repo") or ""),
    )


def _parse_queued(raw: Any) -> QueuedItem | None:
    # The daemon stores queue entries either as bare numbers or as objects.
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return QueuedItem(work_item_id=raw)
    if isinstance(raw, dict):
        item = as_int(raw.get("issue"))
        if not item:
            return None
        return QueuedItem(
            work_item_id=item,
            title=str(raw.get("title") or ""),
            score=as_float(raw.get("score")),
        )
    return None


def parse_daemon_snapshot(data: Any) -> DaemonSnapshot | None:
    if not isinstance(data, dict):
        return None
    raw_jobs = data.get("active_jobs")
    raw_queued = data.get("queued")
    jobs = [_parse_job(j) for j in raw_jobs] if isinstance(raw_jobs, list) else []
    queued = [_parse_queued(q) for q in raw_queued] if isinstance(raw_queued, list) else []
    return DaemonSnapshot(
        pid=as_int(data.get("pid")) or None,
        started_at=str(data.get("started_at") or ""),
        max_parallel=as_int(data.get("max_parallel")) or 2,
        poll_interval=as_int(data.get("poll_interval")) or 30,
        active_jobs=tuple(j for j in jobs if j is not None),
        queued=tuple(q for q in queued if q is not None),
    )


def read_daemon_snapshot(path: Path) -> DaemonSnapshot | None:
    return parse_daemon_snapshot(read_json(path))


def read_heartbeats(directory: Path) -> list[Heartbeat]:
    """One Heartbeat per *.json file; malformed files are skipped."""
    try:
        files = sorted(p for p in directory.iterdir() if p.suffix == ".json")
    except OSError:
        return []

    heartbeats: list[Heartbeat] = []
    for file in files:
        data = read_json(file)
        if not isinstance(data, dict):
            continue
        heartbeats.append(
            Heartbeat(
                agent_id=file.stem,
                work_item_id=as_int(data.get("issue")),
                stage=str(data.get("stage") or ""),
                updated_at=str(data.get("updated_at") or ""),
                machine=str(data.get("machine") or "localhost"),
                iteration=as_int(data.get("iteration")),
                activity=str(data.get("last_activity") or ""),
                memory_mb=as_float(data.get("memory_mb")),
                cpu_pct=as_float(data.get("cpu_pct")),
            )
        )
    return heartbeats


def parse_machine(raw: Any) -> MachineRecord | None:
    if not isinstance(raw, dict):
        return None
    name = str(raw.get("name") or "").strip()
    if not name:
        return None
    return MachineRecord(
        name=name,
        host=str(raw.get("host") or ""),
        role=str(raw.get("role") or "worker"),
        max_workers=as_int(raw.get("max_workers")) or 4,
        ssh_user=str(raw.get("ssh_user") or ""),
        workdir=str(raw.get("workdir") or raw.get("shipwright_path") or ""),
        registered_at=str(raw.get("registered_at") or ""),
    )


def read_machines(path: Path) -> list[MachineRecord]:
    data = read_json(path)
    if not isinstance(data, dict):
        return []
    raw = data.get("machines")
    machines = [parse_machine(m) for m in raw] if isinstance(raw, list) else []
    return [m for m in machines if m is not None]


def read_cost_entries(path: Path) -> list[CostEntry]:
    data = read_json(path)
    if not isinstance(data, dict):
        return []
    entries: list[CostEntry] = []
    raw_entries = data.get("entries")
    for raw in raw_entries if isinstance(raw_entries, list) else []:
        if not isinstance(raw, dict):
            continue
        epoch = raw.get("ts_epoch")
        ts_epoch = as_float(epoch) if epoch is not None else parse_ts(raw.get("ts"))
        entries.append(
            CostEntry(
                cost_usd=as_float(raw.get("cost_usd")),
                ts_epoch=ts_epoch or 0.0,
                model=str(raw.get("model") or ""),
                stage=str(raw.get("stage") or ""),
                work_item_id=as_int(raw.get("issue")) or None,
            )
        )
    return entries


def read_budget(path: Path) -> Budget:
    data = read_json(path)
    if not isinstance(data, dict):
        return Budget()
    return Budget(
        daily_budget_usd=as_float(data.get("daily_budget_usd")),
        enabled=bool(data.get("enabled", False)),
    )


def read_log_progress(path: Path) -> LogProgress:
    content = read_text(path)
    if not content:
        return LogProgress()
    iterations = _ITERATION_RE.findall(content)
    lines_written = sum(int(n) for n in _INSERTIONS_RE.findall(content))
    tests_passing = "Tests: passed" in content or "tests passed" in content.lower()
    if iterations:
        current, maximum = iterations[-1]
        return LogProgress(int(current), int(maximum), lines_written, tests_passing)
    return LogProgress(lines_written=lines_written, tests_passing=tests_passing)


def read_log_tail(path: Path, max_bytes: int = 200_000) -> str:
    try:
        with open(path, "rb") as f:
            f.seek(0, 2)
            size = f.tell()
            f.seek(max(0, size - max_bytes))
            return f.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


def read_health_cache(path: Path) -> dict[str, dict[str, Any]]:
    """Last health-check result per machine name."""
    data = read_json(path)
    if not isinstance(data, dict):
        return {}
    return {name: entry for name, entry in data.items() if isinstance(entry, dict)}


def read_pause_flag(path: Path) -> dict[str, Any]:
    data = read_json(path)
    return data if isinstance(data, dict) else {"paused": False}
