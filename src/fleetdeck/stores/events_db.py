"""Event history source: embedded SQLite store when present, flat log otherwise."""

from __future__ import annotations

import json
import logging
import sqlite3

import aiosqlite

from .models import Event
from .paths import StatePaths
from .readers import read_event_log, sort_events

logger = logging.getLogger(__name__)

_QUERY = """SELECT ts, ts_epoch, type, job_id, stage, status, duration_secs, metadata
            FROM events
            WHERE ts_epoch >= ?
            ORDER BY ts_epoch DESC, id DESC
            LIMIT ?"""


def _row_to_event(row: aiosqlite.Row) -> Event | None:
    record: dict = {}
    if row["metadata"]:
        try:
            meta = json.loads(row["metadata"])
        except (TypeError, json.JSONDecodeError):
            meta = None
        if isinstance(meta, dict):
            record.update(meta)
    record.update(
        {
            "ts": row["ts"] or "",
            "ts_epoch": row["ts_epoch"],
            "type": row["type"],
            "issue": row["job_id"],
            "stage": row["stage"] or "",
            "result": row["status"] or "",
            "duration_s": row["duration_secs"] or 0,
        }
    )
    return Event.from_dict(record)


async def query_event_db(
    paths: StatePaths, since_epoch: float, limit: int = 50_000
) -> list[Event] | None:
    """Bounded query against the embedded store. None means "store unavailable"."""
    if not paths.events_db.is_file():
        return None
    try:
        async with aiosqlite.connect(f"file:{paths.events_db}?mode=ro", uri=True) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='events'"
            )
            if not await cursor.fetchone():
                return None
            cursor = await db.execute(_QUERY, (int(since_epoch), limit))
            rows = await cursor.fetchall()
    except (sqlite3.Error, OSError):
        logger.debug("Event store %s unavailable, using flat log", paths.events_db)
        return None

    # Newest rows were selected first; restore write order before sorting.
    events = [_row_to_event(r) for r in reversed(rows)]
    return sort_events([e for e in events if e is not None])


async def load_events(paths: StatePaths, since_epoch: float) -> list[Event]:
    """Events with timestamp >= since_epoch, from whichever store is available."""
    events = await query_event_db(paths, since_epoch)
    if events is not None:
        return events
    return read_event_log(paths.events_file, since_epoch=since_epoch)
