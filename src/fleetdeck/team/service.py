"""Team presence registry, team activity log and invite tokens.

Presence is never stored: it is derived from the age of the last
heartbeat every time the registry is read.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from ..stores.atomic import write_atomic, write_json_atomic
from ..stores.models import as_float, as_int
from ..stores.readers import read_json, read_jsonl
from ..stores.tokens import TokenStore

logger = logging.getLogger(__name__)

ONLINE_S = 30
IDLE_S = 120
RETAIN_S = 24 * 3600
TEAM_LOG_MAX_LINES = 1000


def presence(last_heartbeat: float, now: float) -> str | None:
    """online (<30s), idle (<120s), offline (<24h), or None once excluded."""
    age = now - last_heartbeat
    if age < ONLINE_S:
        return "online"
    if age < IDLE_S:
        return "idle"
    if age < RETAIN_S:
        return "offline"
    return None


def developer_key(developer_id: str, machine_name: str) -> str:
    return f"{developer_id}@{machine_name}"


def read_developers(path: Path) -> dict[str, dict[str, Any]]:
    data = read_json(path)
    if not isinstance(data, dict):
        return {}
    return {k: v for k, v in data.items() if isinstance(v, dict)}


def team_view(developers: dict[str, dict[str, Any]], now: float) -> dict[str, Any]:
    """Team summary with each developer's derived `_presence`."""
    listed: list[dict[str, Any]] = []
    online = 0
    active = 0
    queued = 0
    for key in sorted(developers):
        record = developers[key]
        last = as_float(record.get("last_heartbeat"))
        if last > 0:
            state = presence(last, now)
        else:
            # Explicit disconnect: offline until the retention window passes.
            gone = now - as_float(record.get("disconnected_at"))
            state = "offline" if gone < RETAIN_S else None
        if state is None:
            continue
        jobs = record.get("active_jobs")
        waiting = record.get("queued")
        if state != "offline":
            online += 1
            active += len(jobs) if isinstance(jobs, list) else 0
            queued += len(waiting) if isinstance(waiting, list) else 0
        listed.append({**record, "_presence": state})
    return {
        "total_online": online,
        "total_active_pipelines": active,
        "total_queued": queued,
        "developers": listed,
    }


class TeamRegistry:
    """Connected developer/machine pairs keyed by `<developer_id>@<machine>`."""

    def __init__(self, developers_file: Path, events_file: Path):
        self.developers_file = developers_file
        self.events_file = events_file
        self._developers = read_developers(developers_file)

    def _save(self) -> None:
        write_json_atomic(self.developers_file, self._developers)

    @property
    def developers(self) -> dict[str, dict[str, Any]]:
        return dict(self._developers)

    def heartbeat(
        self,
        developer_id: str,
        machine_name: str,
        payload: dict[str, Any],
        now: float | None = None,
    ) -> dict[str, Any]:
        now = time.time() if now is None else now
        if not developer_id or not machine_name:
            raise ValueError("developer_id and machine_name are required")

        jobs = payload.get("active_jobs")
        waiting = payload.get("queued")
        record = {
            "developer_id": developer_id,
            "machine_name": machine_name,
            "hostname": str(payload.get("hostname") or ""),
            "platform": str(payload.get("platform") or ""),
            "daemon_running": bool(payload.get("daemon_running", False)),
            "daemon_pid": as_int(payload.get("daemon_pid")) or None,
            "active_jobs": jobs if isinstance(jobs, list) else [],
            "queued": waiting if isinstance(waiting, list) else [],
            "last_heartbeat": now,
        }
        self._developers[developer_key(developer_id, machine_name)] = record
        self._save()

        events = payload.get("events")
        if isinstance(events, list) and events:
            self.append_events(developer_id, events)
        return record

    def disconnect(
        self, developer_id: str, machine_name: str, now: float | None = None
    ) -> bool:
        """Zero the last heartbeat so presence resolves to offline immediately."""
        record = self._developers.get(developer_key(developer_id, machine_name))
        if record is None:
            return False
        record["last_heartbeat"] = 0
        record["disconnected_at"] = time.time() if now is None else now
        self._save()
        return True

    def append_events(self, developer_id: str, events: list[Any]) -> int:
        lines = [json.dumps(r, sort_keys=True) for r in read_jsonl(self.events_file)]
        added = 0
        for event in events:
            if not isinstance(event, dict):
                continue
            lines.append(json.dumps({**event, "from_developer": developer_id}, sort_keys=True))
            added += 1
        if added:
            write_atomic(self.events_file, "\n".join(lines[-TEAM_LOG_MAX_LINES:]) + "\n")
        return added

    def activity(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent team events, newest first."""
        records = read_jsonl(self.events_file)
        return list(reversed(records[-limit:])) if limit > 0 else []

    def view(self, now: float | None = None) -> dict[str, Any]:
        return team_view(self._developers, time.time() if now is None else now)


class InviteService:
    """Invite links that let a teammate find this dashboard."""

    def __init__(self, store: TokenStore, public_url: str, team_name: str = ""):
        self.store = store
        self.public_url = public_url.rstrip("/")
        self.team_name = team_name

    def create(self, now: float | None = None) -> dict[str, Any]:
        record = self.store.issue(now=now)
        return {
            "token": record.token,
            "url": f"{self.public_url}/api/team/invite/{record.token}",
            "expires_at": record.expires_at,
        }

    def verify(self, token: str, now: float | None = None) -> dict[str, Any]:
        """Consume an invite. Raises TokenError if unknown, expired or used."""
        self.store.redeem(token, now=now)
        return {"valid": True, "dashboard_url": self.public_url, "team_name": self.team_name}

    def cleanup(self, now: float | None = None) -> int:
        return self.store.purge_expired(now=now)
