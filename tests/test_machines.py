"""Tests for the machine pool, remote probing and join tokens."""

from __future__ import annotations

import json
import os

import pytest
from conftest import write_json

from fleetdeck.machines import remote
from fleetdeck.machines.remote import RemoteError, parse_probe, scale_command, ssh_args
from fleetdeck.machines.service import (
    JoinService,
    MachineConflict,
    MachineNotFound,
    MachinePool,
    is_local_host,
)
from fleetdeck.stores.readers import read_health_cache, read_machines
from fleetdeck.stores.tokens import TokenStore

NOW = 1_700_000_000.0


@pytest.fixture
def pool(paths):
    return MachinePool(paths, probe_timeout=1.0)


@pytest.fixture
def joins(paths, pool):
    return JoinService(TokenStore(paths.join_tokens, ttl_hours=1), pool, "http://fleet:8767/")


class TestRegistry:
    def test_add_and_list(self, pool, paths):
        record = pool.add("m1", "10.0.0.5", max_workers=2, ssh_user="ops", now=NOW)
        assert record.registered_at == "2023-11-14T22:13:20Z"
        assert [m.name for m in pool.records()] == ["m1"]
        assert read_machines(paths.machines_file)[0].ssh_user == "ops"

    def test_duplicate_name_conflicts(self, pool):
        pool.add("m1", "10.0.0.5")
        with pytest.raises(MachineConflict):
            pool.add("m1", "10.0.0.6")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"name": "", "host": "h"},
            {"name": "m", "host": " "},
            {"name": "m", "host": "h", "role": "boss"},
            {"name": "m", "host": "h", "max_workers": 0},
            {"name": "m", "host": "-oProxyCommand=touch /tmp/x"},
            {"name": "m", "host": "h", "ssh_user": "-oProxyCommand=id"},
            {"name": "m", "host": "a b"},
        ],
    )
    def test_invalid_input(self, pool, kwargs):
        with pytest.raises(ValueError):
            pool.add(**kwargs)

    def test_update_and_remove(self, pool, paths):
        pool.add("m1", "10.0.0.5")
        write_json(paths.health_cache, {"m1": {"status": "online"}, "m2": {"status": "offline"}})
        assert pool.update("m1", max_workers=8, host=None).max_workers == 8
        pool.remove("m1")
        assert pool.records() == []
        assert set(read_health_cache(paths.health_cache)) == {"m2"}

    def test_update_rejects_option_like_host(self, pool):
        pool.add("m1", "10.0.0.5")
        with pytest.raises(ValueError):
            pool.update("m1", host="-oProxyCommand=id")
        with pytest.raises(ValueError):
            pool.update("m1", ssh_user="-l root")
        assert pool.get("m1").host == "10.0.0.5"

    def test_missing_machine(self, pool):
        with pytest.raises(MachineNotFound):
            pool.update("ghost", max_workers=2)
        with pytest.raises(MachineNotFound):
            pool.remove("ghost")

    def test_keeps_other_document_keys(self, pool, paths):
        write_json(paths.machines_file, {"version": 2, "machines": []})
        pool.add("m1", "10.0.0.5")
        assert json.loads(paths.machines_file.read_text())["version"] == 2

    def test_local_hosts(self):
        assert is_local_host("localhost")
        assert is_local_host("127.0.0.1")
        assert not is_local_host("10.0.0.5")


class TestHealth:
    @pytest.mark.asyncio
    async def test_unreachable_machine_is_offline(self, pool, paths, monkeypatch):
        async def unreachable(target, command, timeout):
            raise RemoteError(f"{target} did not respond within {timeout:g}s")

        monkeypatch.setattr(remote, "run_ssh", unreachable)
        pool.add("m1", "10.0.0.5", ssh_user="ops")
        health = await pool.health_check("m1", now=NOW)
        assert health["status"] == "offline"
        assert "ops@10.0.0.5" in health["error"]
        assert read_health_cache(paths.health_cache)["m1"]["checked_at"] == NOW

    @pytest.mark.asyncio
    async def test_reachable_without_daemon_is_degraded(self, pool, monkeypatch):
        async def no_daemon(target, command, timeout):
            return "none|0|0\n"

        monkeypatch.setattr(remote, "run_ssh", no_daemon)
        pool.add("m1", "10.0.0.5")
        assert (await pool.health_check("m1"))["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_running_daemon_is_online(self, pool, monkeypatch):
        async def running(target, command, timeout):
            return "motd line\n4242|3|2\n"

        monkeypatch.setattr(remote, "run_ssh", running)
        pool.add("m1", "10.0.0.5", max_workers=4)
        await pool.health_check("m1")
        (described,) = pool.describe()
        assert described["status"] == "online"
        assert described["active_workers"] == 2
        assert described["health"]["heartbeat_count"] == 3

    @pytest.mark.asyncio
    async def test_local_machine_reads_state_directly(self, pool, paths):
        write_json(paths.daemon_state, {"pid": os.getpid(), "active_jobs": [{"issue": 1}]})
        pool.add("here", "localhost")
        health = await pool.health_check("here", now=NOW)
        assert health["status"] == "online"
        assert health["active_workers"] == 1

    @pytest.mark.asyncio
    async def test_unknown_machine(self, pool):
        with pytest.raises(MachineNotFound):
            await pool.health_check("ghost")

    def test_describe_without_health(self, pool):
        pool.add("m1", "10.0.0.5")
        (described,) = pool.describe()
        assert described["status"] == "unknown"
        assert described["checked_at"] is None


class TestRemote:
    def test_parse_probe(self):
        result = parse_probe("4242|3|1")
        assert (result.daemon_pid, result.heartbeat_count, result.active_jobs) == (4242, 3, 1)
        assert parse_probe("none|0|0").daemon_pid is None

    def test_parse_probe_rejects_garbage(self):
        with pytest.raises(RemoteError):
            parse_probe("Permission denied")

    def test_ssh_args_are_non_interactive(self):
        args = ssh_args("ops@h", "true", 5)
        assert args[0] == "ssh"
        assert "BatchMode=yes" in args
        assert "ConnectTimeout=5" in args
        assert args[-2:] == ["ops@h", "true"]
        assert args[-3] == "--"

    def test_scale_command(self):
        command = scale_command(3)
        assert "--argjson n 3" in command
        assert '"max_parallel": 3' in command


class TestScale:
    @pytest.mark.asyncio
    async def test_local_scale_rewrites_daemon_config(self, pool, paths):
        write_json(paths.daemon_config, {"max_parallel": 1, "poll_interval": 30})
        pool.add("here", "127.0.0.1", max_workers=4)
        assert (await pool.scale("here", 3))["workers"] == 3
        assert json.loads(paths.daemon_config.read_text()) == {
            "max_parallel": 3,
            "poll_interval": 30,
        }

    @pytest.mark.asyncio
    async def test_remote_scale_runs_over_ssh(self, pool, monkeypatch):
        calls = []

        async def record(target, command, timeout):
            calls.append((target, command))
            return "ok\n"

        monkeypatch.setattr(remote, "run_ssh", record)
        pool.add("m1", "10.0.0.5", ssh_user="ops", max_workers=4)
        await pool.scale("m1", 2)
        assert calls[0][0] == "ops@10.0.0.5"
        assert "--argjson n 2" in calls[0][1]

    @pytest.mark.asyncio
    async def test_scale_bounds(self, pool):
        pool.add("m1", "localhost", max_workers=2)
        with pytest.raises(ValueError):
            await pool.scale("m1", 3)


class TestJoinTokens:
    def test_issue(self, joins):
        issued = joins.issue("builder-1", max_workers=2)
        assert issued["script_url"].startswith("http://fleet:8767/api/join/")
        assert issued["join_cmd"] == f"curl -fsSL {issued['script_url']} | bash"
        (listed,) = joins.tokens()
        assert listed["label"] == "builder-1"
        assert listed["used"] is False
        assert "token" not in listed

    def test_redeem_returns_script_and_registers(self, joins, pool):
        token = joins.issue("builder-1", max_workers=2)["token"]
        script = joins.redeem(token, host="10.0.0.9")
        assert script.startswith("#!/usr/bin/env bash")
        assert "DASHBOARD_URL=http://fleet:8767" in script
        assert "MACHINE_NAME=builder-1" in script
        assert "team-config.json" in script
        assert pool.get("builder-1").host == "10.0.0.9"

    def test_second_redemption_fails(self, joins):
        token = joins.issue("builder-1")["token"]
        joins.redeem(token, host="10.0.0.9")
        script = joins.redeem(token, host="10.0.0.9")
        assert "already been used" in script
        assert script.rstrip().endswith("exit 1")

    def test_unknown_token_script(self, joins):
        script = joins.redeem("bogus")
        assert ">&2" in script
        assert script.rstrip().endswith("exit 1")

    def test_label_is_shell_quoted(self, joins):
        token = joins.issue("evil; rm -rf /")["token"]
        script = joins.redeem(token)
        assert "MACHINE_NAME='evil; rm -rf /'" in script

    def test_rejoin_of_registered_machine(self, joins, pool):
        pool.add("builder-1", "10.0.0.9")
        token = joins.issue("builder-1")["token"]
        assert "exit 1" not in joins.redeem(token, host="10.0.0.10")
        assert pool.get("builder-1").host == "10.0.0.9"
