"""Machine pool - registry CRUD, health checks, scaling and join tokens."""

from __future__ import annotations

import json
import logging
import os
import shlex
import socket
import time
from dataclasses import replace
from typing import Any

from ..stores.atomic import write_json_atomic
from ..stores.models import MachineRecord
from ..stores.paths import StatePaths
from ..stores.readers import (
    parse_machine,
    read_daemon_snapshot,
    read_health_cache,
    read_heartbeats,
    read_json,
)
from ..stores.tokens import TokenError, TokenStore
from . import remote
from .remote import RemoteError

logger = logging.getLogger(__name__)

ROLES = ("worker", "primary")


class MachineConflict(Exception):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Machine '{name}' already exists")


class MachineNotFound(Exception):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Machine '{name}' not found")


def is_local_host(host: str) -> bool:
    return host in {"localhost", "127.0.0.1", "::1", socket.gethostname()}


def _check_ssh_target(host: str, ssh_user: str = "") -> None:
    """Reject values ssh would read as options or split into several arguments."""
    for label, value in (("host", host), ("ssh_user", ssh_user)):
        if value.startswith("-") or any(c.isspace() for c in value):
            raise ValueError(f"invalid {label}: {value!r}")


def _pid_alive(pid: int | None) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class MachinePool:
    """Registry of worker machines backed by machines.json.

    The registry is re-read on every call since external tooling edits it
    too; every write replaces the whole document.
    """

    def __init__(self, paths: StatePaths, probe_timeout: float = 5.0):
        self.paths = paths
        self.probe_timeout = probe_timeout

    def _document(self) -> dict[str, Any]:
        data = read_json(self.paths.machines_file)
        return data if isinstance(data, dict) else {}

    def records(self) -> list[MachineRecord]:
        raw = self._document().get("machines")
        machines = [parse_machine(m) for m in raw] if isinstance(raw, list) else []
        return [m for m in machines if m is not None]

    def _save(self, machines: list[MachineRecord]) -> None:
        document = self._document()
        document["machines"] = [m.to_dict() for m in machines]
        write_json_atomic(self.paths.machines_file, document)

    def get(self, name: str) -> MachineRecord:
        for machine in self.records():
            if machine.name == name:
                return machine
        raise MachineNotFound(name)

    def add(
        self,
        name: str,
        host: str,
        role: str = "worker",
        max_workers: int = 4,
        ssh_user: str = "",
        workdir: str = "",
        now: float | None = None,
    ) -> MachineRecord:
        name = name.strip()
        if not name or not host.strip():
            raise ValueError("name and host are required")
        if role not in ROLES:
            raise ValueError(f"role must be one of: {', '.join(ROLES)}")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        host = host.strip()
        _check_ssh_target(host, ssh_user)
        machines = self.records()
        if any(m.name == name for m in machines):
            raise MachineConflict(name)

        now = time.time() if now is None else now
        record = MachineRecord(
            name=name,
            host=host,
            role=role,
            max_workers=max_workers,
            ssh_user=ssh_user,
            workdir=workdir,
            registered_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(now)),
        )
        self._save([*machines, record])
        logger.info("Registered machine %s (%s)", name, record.host)
        return record

    def update(self, name: str, **changes: Any) -> MachineRecord:
        changes = {k: v for k, v in changes.items() if v is not None}
        if "role" in changes and changes["role"] not in ROLES:
            raise ValueError(f"role must be one of: {', '.join(ROLES)}")
        if "max_workers" in changes and changes["max_workers"] < 1:
            raise ValueError("max_workers must be at least 1")
        if "host" in changes:
            changes["host"] = changes["host"].strip()
            if not changes["host"]:
                raise ValueError("host cannot be empty")
        _check_ssh_target(changes.get("host", ""), changes.get("ssh_user", ""))
        machines = self.records()
        for i, machine in enumerate(machines):
            if machine.name == name:
                machines[i] = replace(machine, **changes)
                self._save(machines)
                return machines[i]
        raise MachineNotFound(name)

    def remove(self, name: str) -> None:
        machines = self.records()
        remaining = [m for m in machines if m.name != name]
        if len(remaining) == len(machines):
            raise MachineNotFound(name)
        self._save(remaining)
        cache = read_health_cache(self.paths.health_cache)
        if cache.pop(name, None) is not None:
            write_json_atomic(self.paths.health_cache, cache)
        logger.info("Removed machine %s", name)

    # -- Health -------------------------------------------------------------

    def _local_health(self, now: float) -> dict[str, Any]:
        snapshot = read_daemon_snapshot(self.paths.daemon_state)
        heartbeats = read_heartbeats(self.paths.heartbeat_dir)
        running = snapshot is not None and _pid_alive(snapshot.pid)
        ages = [hb.age(now) for hb in heartbeats]
        return {
            "status": "online" if running else "degraded",
            "daemon_running": running,
            "heartbeat_count": len(heartbeats),
            "active_workers": len(snapshot.active_jobs) if snapshot else 0,
            "last_heartbeat_s_ago": int(min(ages)) if ages else -1,
        }

    async def _remote_health(self, machine: MachineRecord) -> dict[str, Any]:
        target = f"{machine.ssh_user}@{machine.host}" if machine.ssh_user else machine.host
        try:
            result = await remote.probe(target, self.probe_timeout)
        except RemoteError as e:
            logger.info("Machine %s unreachable: %s", machine.name, e.message)
            return {
                "status": "offline",
                "daemon_running": False,
                "heartbeat_count": 0,
                "active_workers": 0,
                "last_heartbeat_s_ago": -1,
                "error": e.message,
            }
        running = result.daemon_pid is not None
        return {
            "status": "online" if running else "degraded",
            "daemon_running": running,
            "heartbeat_count": result.heartbeat_count,
            "active_workers": result.active_jobs,
            "last_heartbeat_s_ago": -1,
        }

    async def health_check(self, name: str, now: float | None = None) -> dict[str, Any]:
        """Probe one machine and cache the result. Unreachable means offline."""
        machine = self.get(name)
        now = time.time() if now is None else now
        if is_local_host(machine.host):
            health = self._local_health(now)
        else:
            health = await self._remote_health(machine)
        health["checked_at"] = now

        cache = read_health_cache(self.paths.health_cache)
        cache[name] = health
        write_json_atomic(self.paths.health_cache, cache)
        return health

    def describe(self) -> list[dict[str, Any]]:
        """Registry entries merged with their last cached health."""
        cache = read_health_cache(self.paths.health_cache)
        described = []
        for machine in self.records():
            health = cache.get(machine.name, {})
            described.append(
                {
                    **machine.to_dict(),
                    "status": health.get("status", "unknown"),
                    "active_workers": health.get("active_workers", 0),
                    "health": {
                        "daemon_running": health.get("daemon_running", False),
                        "heartbeat_count": health.get("heartbeat_count", 0),
                        "last_heartbeat_s_ago": health.get("last_heartbeat_s_ago", -1),
                    },
                    "checked_at": health.get("checked_at"),
                }
            )
        return described

    async def scale(self, name: str, workers: int) -> dict[str, Any]:
        """Change a machine's worker count. Raises RemoteError if the command fails."""
        machine = self.get(name)
        if not 1 <= workers <= machine.max_workers:
            raise ValueError(f"workers must be between 1 and {machine.max_workers}")
        if is_local_host(machine.host):
            config = read_json(self.paths.daemon_config)
            config = config if isinstance(config, dict) else {}
            config["max_parallel"] = workers
            write_json_atomic(self.paths.daemon_config, config)
        else:
            target = f"{machine.ssh_user}@{machine.host}" if machine.ssh_user else machine.host
            await remote.scale(target, workers, self.probe_timeout)
        logger.info("Scaled machine %s to %d workers", name, workers)
        return {"ok": True, "machine": name, "workers": workers}


def error_script(message: str) -> str:
    return f"#!/usr/bin/env bash\necho {shlex.quote('fleetdeck: ' + message)} >&2\nexit 1\n"


class JoinService:
    """Single-use onboarding tokens for new worker machines."""

    def __init__(self, store: TokenStore, pool: MachinePool, public_url: str):
        self.store = store
        self.pool = pool
        self.public_url = public_url.rstrip("/")

    def issue(self, label: str = "", max_workers: int = 4, now: float | None = None) -> dict:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        record = self.store.issue(now=now, label=label, max_workers=max_workers)
        script_url = f"{self.public_url}/api/join/{record.token}"
        return {
            "token": record.token,
            "join_cmd": f"curl -fsSL {shlex.quote(script_url)} | bash",
            "script_url": script_url,
            "expires_at": record.expires_at,
        }

    def tokens(self) -> list[dict[str, Any]]:
        return [
            {
                "label": r.data.get("label", ""),
                "created_at": r.created_at,
                "expires_at": r.expires_at,
                "used": r.used,
            }
            for r in self.store.records()
        ]

    def onboarding_script(self, label: str, max_workers: int) -> str:
        config = json.dumps(
            {"dashboard_url": self.public_url, "machine_name": label, "auto_connect": True},
            sort_keys=True,
        )
        daemon = json.dumps({"max_parallel": max_workers})
        return "\n".join(
            [
                "#!/usr/bin/env bash",
                "set -euo pipefail",
                f"DASHBOARD_URL={shlex.quote(self.public_url)}",
                f"MACHINE_NAME={shlex.quote(label)}",
                'mkdir -p "$HOME/.shipwright"',
                'tmp="$(mktemp "$HOME/.shipwright/.team-config.XXXXXX")"',
                f"printf '%s\\n' {shlex.quote(config)} > \"$tmp\"",
                'mv "$tmp" "$HOME/.shipwright/team-config.json"',
                'if [ ! -f "$HOME/.shipwright/daemon-config.json" ]; then',
                f"  printf '%s\\n' {shlex.quote(daemon)} \\",
                '    > "$HOME/.shipwright/daemon-config.json"',
                "fi",
                'echo "Joined fleet at $DASHBOARD_URL as $MACHINE_NAME"',
                "",
            ]
        )

    def redeem(self, token: str, host: str = "", now: float | None = None) -> str:
        """Consume a join token and return the shell script to run.

        Never raises for a bad token: the returned script reports the
        error on stderr and exits non-zero.
        """
        try:
            record = self.store.redeem(token, now=now)
        except TokenError as e:
            logger.warning("Rejected join token: %s", e.reason)
            return error_script(e.message)

        label = str(record.data.get("label") or "") or host or "worker"
        max_workers = int(record.data.get("max_workers") or 4)
        if host:
            try:
                self.pool.add(label, host, max_workers=max_workers, now=now)
            except MachineConflict:
                logger.info("Join for already registered machine %s", label)
        return self.onboarding_script(label, max_workers)
