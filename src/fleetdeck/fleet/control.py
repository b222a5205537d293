"""Human interventions on running jobs and daemon-wide pause controls."""

from __future__ import annotations

import logging
import os
import signal
import time
from typing import Any

from ..stores.atomic import write_atomic, write_json_atomic
from ..stores.paths import StatePaths
from ..stores.readers import read_budget, read_daemon_snapshot, read_json, read_pause_flag
from .aggregator import iso
from .detail import artifact_dir, worktree_path

logger = logging.getLogger(__name__)

_SIGNALS = {
    "pause": signal.SIGSTOP,
    "resume": signal.SIGCONT,
    "abort": signal.SIGTERM,
}
_MARKER_FILES = {
    "message": "human-message.txt",
    "skip": "skip-stage.txt",
}
ACTIONS = (*_SIGNALS, *_MARKER_FILES)


def _result(work_item_id: int, action: str, ok: bool, reason: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {"ok": ok, "action": action, "issue": work_item_id}
    if reason:
        result["reason"] = reason
    return result


def intervene(
    paths: StatePaths, work_item_id: int, action: str, message: str = ""
) -> dict[str, Any]:
    """Apply one action to an active job.

    Signals go to the job's pid; message and skip drop a marker file in
    the job's artifact directory for the pipeline to pick up.

    Raises:
        ValueError: unknown action, or a message action with no text.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown action: {action}")
    if action == "message" and not message.strip():
        raise ValueError("message is required")

    snapshot = read_daemon_snapshot(paths.daemon_state)
    job = snapshot.find_job(work_item_id) if snapshot else None
    if job is None:
        return _result(work_item_id, action, False, "not an active job")

    if action in _SIGNALS:
        if not job.pid:
            return _result(work_item_id, action, False, "job has no pid")
        try:
            os.kill(job.pid, _SIGNALS[action])
        except ProcessLookupError:
            return _result(work_item_id, action, False, "process not running")
        except PermissionError:
            return _result(work_item_id, action, False, "not permitted to signal process")
        logger.info("Sent %s to issue #%d (pid %d)", action, work_item_id, job.pid)
        return _result(work_item_id, action, True)

    worktree = worktree_path(snapshot, work_item_id)
    if worktree is None:
        return _result(work_item_id, action, False, "worktree not found")
    content = message if action == "message" else "skip"
    write_atomic(artifact_dir(worktree) / _MARKER_FILES[action], content)
    logger.info("Wrote %s marker for issue #%d", action, work_item_id)
    return _result(work_item_id, action, True)


def bulk_intervene(
    paths: StatePaths, work_item_ids: list[int], action: str, message: str = ""
) -> list[dict[str, Any]]:
    if action not in ACTIONS:
        raise ValueError(f"Unknown action: {action}")
    return [intervene(paths, item, action, message) for item in work_item_ids]


def set_paused(
    paths: StatePaths, paused: bool, reason: str = "", now: float | None = None
) -> dict[str, Any]:
    now = time.time() if now is None else now
    flag: dict[str, Any] = {"paused": paused}
    if paused:
        flag.update({"reason": reason or "manual", "paused_at": iso(now)})
    else:
        flag["resumed_at"] = iso(now)
    write_json_atomic(paths.pause_flag, flag)
    logger.info("Daemon %s", "paused" if paused else "resumed")
    return flag


def emergency_brake(
    paths: StatePaths, reason: str = "emergency brake", now: float | None = None
) -> dict[str, Any]:
    """Pause the daemon and every active job."""
    flag = set_paused(paths, True, reason, now)
    snapshot = read_daemon_snapshot(paths.daemon_state)
    jobs = snapshot.active_jobs if snapshot else ()
    results = [intervene(paths, job.work_item_id, "pause") for job in jobs]
    logger.warning("Emergency brake engaged: %d jobs paused", sum(r["ok"] for r in results))
    return {"ok": True, "pause": flag, "results": results}


def daemon_config(paths: StatePaths) -> dict[str, Any]:
    config = read_json(paths.daemon_config)
    budget = read_budget(paths.budget_file)
    return {
        "pause": read_pause_flag(paths.pause_flag),
        "config": config if isinstance(config, dict) else {},
        "budget": {"daily_budget_usd": budget.daily_budget_usd, "enabled": budget.enabled},
    }
