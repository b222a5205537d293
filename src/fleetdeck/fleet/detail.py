"""Per-work-item views: detail, timeline, activity feed, logs and artifacts."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ..stores.models import DaemonSnapshot, Event
from ..stores.paths import StatePaths
from ..stores.readers import read_log_tail, read_text

ARTIFACT_DIR = Path(".claude") / "pipeline-artifacts"
ARTIFACT_FILES = {
    "plan": "plan.md",
    "design": "design.md",
    "dod": "dod.md",
    "intake": "intake.json",
}
MAX_ACTIVITY_PAGE = 200


def worktree_path(snapshot: DaemonSnapshot | None, work_item_id: int) -> Path | None:
    """Resolve the job's worktree from the daemon snapshot, if it still exists."""
    job = snapshot.find_job(work_item_id) if snapshot else None
    if job is None or not job.worktree:
        return None
    base = Path(job.repo) / job.worktree if job.repo else Path(job.worktree).expanduser()
    return base if base.is_dir() else None


def artifact_dir(worktree: Path) -> Path:
    return worktree / ARTIFACT_DIR


def _title_map(snapshot: DaemonSnapshot | None) -> dict[int, str]:
    if snapshot is None:
        return {}
    return {j.work_item_id: j.title for j in snapshot.active_jobs if j.title}


def read_branch(worktree: Path) -> str:
    """Current branch of a checkout or linked worktree; short sha when detached."""
    git = worktree / ".git"
    if git.is_file():
        content = read_text(git).strip()
        if not content.startswith("gitdir:"):
            return ""
        head = Path(content.removeprefix("gitdir:").strip()) / "HEAD"
    else:
        head = git / "HEAD"
    ref = read_text(head).strip()
    if ref.startswith("ref: refs/heads/"):
        return ref.removeprefix("ref: refs/heads/")
    return ref[:12]


def read_artifact(worktree: Path | None, kind: str) -> Any:
    """Artifact text (or decoded intake JSON). Unknown kinds raise ValueError."""
    if kind not in ARTIFACT_FILES:
        raise ValueError(f"Unknown artifact type: {kind}")
    if worktree is None:
        return None if kind == "intake" else ""
    content = read_text(artifact_dir(worktree) / ARTIFACT_FILES[kind])
    if kind != "intake":
        return content
    if not content.strip():
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return None


def pipeline_detail(
    work_item_id: int,
    events: list[Event],
    snapshot: DaemonSnapshot | None,
    now: float,
) -> dict[str, Any]:
    stage_history: list[dict[str, Any]] = []
    current_stage = ""
    pr_link = ""
    started: float | None = None

    for event in events:
        if event.work_item_id != work_item_id:
            continue
        if event.type == "pipeline.started":
            started = event.timestamp
        elif event.type == "stage.started":
            current_stage = event.stage
        elif event.type == "stage.completed":
            stage_history.append(
                {"stage": event.stage, "duration_s": event.duration, "ts": event.ts}
            )
        elif event.type == "pipeline.completed" and event.metadata.get("pr_url"):
            pr_link = str(event.metadata["pr_url"])

    worktree = worktree_path(snapshot, work_item_id)
    return {
        "issue": work_item_id,
        "title": _title_map(snapshot).get(work_item_id, ""),
        "stage": current_stage,
        "stage_history": stage_history,
        "plan": read_artifact(worktree, "plan"),
        "design": read_artifact(worktree, "design"),
        "dod": read_artifact(worktree, "dod"),
        "intake": read_artifact(worktree, "intake"),
        "elapsed_s": max(0, int(now - started)) if started is not None else 0,
        "branch": read_branch(worktree) if worktree else "",
        "pr_link": pr_link,
    }


def _close_segment(segments: list[dict[str, Any]], stage: str, ts: str, status: str) -> None:
    for segment in reversed(segments):
        if segment["stage"] == stage and segment["status"] == "running":
            segment["end"] = ts
            segment["status"] = status
            return


def timeline(
    events: list[Event], snapshot: DaemonSnapshot | None, now: float, range_hours: int = 24
) -> list[dict[str, Any]]:
    """Per-item stage segments (running/complete/failed) over the last range_hours."""
    cutoff = now - range_hours * 3600
    titles = _title_map(snapshot)
    segments: dict[int, list[dict[str, Any]]] = {}

    for event in events:
        item = event.work_item_id
        if not item or event.timestamp < cutoff:
            continue
        item_segments = segments.setdefault(item, [])
        if event.type == "pipeline.completed" and item not in titles:
            titles[item] = str(event.metadata.get("title") or "")
        elif event.type == "stage.started":
            item_segments.append(
                {"stage": event.stage, "start": event.ts, "end": None, "status": "running"}
            )
        elif event.type == "stage.completed":
            _close_segment(item_segments, event.stage, event.ts, "complete")
        elif event.type == "stage.failed":
            _close_segment(item_segments, event.stage, event.ts, "failed")

    return [
        {"issue": item, "title": titles.get(item, ""), "segments": segs}
        for item, segs in segments.items()
        if segs
    ]


def activity(
    events: list[Event],
    snapshot: DaemonSnapshot | None,
    limit: int = 50,
    offset: int = 0,
    event_type: str = "all",
    work_item_id: int | None = None,
) -> dict[str, Any]:
    """Newest-first paged activity feed.

    `event_type` matches the exact type or any dotted sub-type
    ("stage" matches "stage.started").
    """
    limit = max(0, min(limit, MAX_ACTIVITY_PAGE))
    offset = max(0, offset)
    filtered = events
    if event_type and event_type != "all":
        filtered = [
            e for e in filtered if e.type == event_type or e.type.startswith(event_type + ".")
        ]
    if work_item_id is not None:
        filtered = [e for e in filtered if e.work_item_id == work_item_id]

    newest_first = list(reversed(filtered))
    page = newest_first[offset : offset + limit]
    titles = _title_map(snapshot)
    enriched = []
    for event in page:
        record = event.to_dict()
        if event.work_item_id is not None:
            record["issue_title"] = titles.get(event.work_item_id, "")
        enriched.append(record)

    total = len(newest_first)
    return {"events": enriched, "total": total, "has_more": offset + limit < total}


def log_tail(paths: StatePaths, work_item_id: int) -> str:
    return read_log_tail(paths.log_file(work_item_id))
