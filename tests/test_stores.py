"""Tests for the best-effort state readers, atomic writes and token store."""

from __future__ import annotations

import asyncio
import json
import time
from concurrent.futures import ThreadPoolExecutor

import aiosqlite
import pytest
from conftest import event, write_events, write_json

from fleetdeck.stores.atomic import write_atomic, write_json_atomic
from fleetdeck.stores.events_db import load_events, query_event_db
from fleetdeck.stores.models import Event, Heartbeat, heartbeat_status, parse_ts
from fleetdeck.stores.readers import (
    read_budget,
    read_cost_entries,
    read_daemon_snapshot,
    read_event_log,
    read_heartbeats,
    read_log_progress,
    read_machines,
)
from fleetdeck.stores.tokens import TokenError, TokenStore


class TestEventLog:
    def test_missing_file_is_empty(self, paths):
        assert read_event_log(paths.events_file) == []

    def test_malformed_lines_are_skipped(self, paths):
        paths.state_dir.mkdir(parents=True)
        paths.events_file.write_text(
            "\n".join(
                [
                    json.dumps(event("pipeline.started", 100, 7)),
                    "{not json",
                    json.dumps(["a", "list"]),
                    json.dumps({"type": "no.timestamp"}),
                    "",
                    json.dumps(event("pipeline.completed", 200, 7, result="success")),
                ]
            )
        )
        events = read_event_log(paths.events_file)
        assert [e.type for e in events] == ["pipeline.started", "pipeline.completed"]
        assert events[1].result == "success"

    def test_sorted_by_timestamp_with_stable_ties(self, paths):
        write_events(
            paths,
            [
                event("b.first", 200),
                event("a.early", 100),
                event("b.second", 200),
            ],
        )
        events = read_event_log(paths.events_file)
        assert [e.type for e in events] == ["a.early", "b.first", "b.second"]

    def test_since_filter(self, paths):
        write_events(paths, [event("old", 100), event("new", 500)])
        assert [e.type for e in read_event_log(paths.events_file, since_epoch=200)] == ["new"]

    def test_iso_timestamp_fallback(self):
        e = Event.from_dict({"type": "x", "ts": "2024-01-01T00:00:00Z"})
        assert e is not None
        assert e.timestamp == parse_ts("2024-01-01T00:00:00+00:00")

    def test_metadata_round_trips_extra_keys(self):
        e = Event.from_dict(event("pipeline.completed", 10, 3, pr_url="https://pr/1"))
        assert e.metadata == {"pr_url": "https://pr/1"}
        assert e.to_dict()["issue"] == 3


class TestEventStorePreference:
    async def _create_db(self, paths, rows):
        paths.events_db.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(paths.events_db) as db:
            await db.execute(
                """CREATE TABLE events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT, ts_epoch INTEGER, type TEXT, job_id INTEGER,
                    stage TEXT, status TEXT, duration_secs REAL, metadata TEXT)"""
            )
            await db.executemany(
                "INSERT INTO events (ts, ts_epoch, type, job_id, stage, status, duration_secs,"
                " metadata) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            await db.commit()

    @pytest.mark.asyncio
    async def test_prefers_database_over_flat_log(self, paths):
        write_events(paths, [event("from.log", 100)])
        await self._create_db(
            paths,
            [
                ("", 150, "pipeline.completed", 9, "", "success", 42.0, '{"pr_url": "u"}'),
                ("", 120, "pipeline.started", 9, "", "", 0, None),
            ],
        )
        events = await load_events(paths, 0)
        assert [e.type for e in events] == ["pipeline.started", "pipeline.completed"]
        assert events[1].work_item_id == 9
        assert events[1].duration == 42.0
        assert events[1].metadata["pr_url"] == "u"

    @pytest.mark.asyncio
    async def test_row_limit_keeps_newest_events(self, paths):
        await self._create_db(
            paths,
            [
                ("", 1000, "stage.started", 1, "plan", "", 0, None),
                ("", 1001, "stage.started", 1, "build", "", 0, None),
                ("", 1002, "stage.started", 1, "test", "", 0, None),
                ("", 1002, "stage.completed", 1, "test", "", 0, None),
            ],
        )
        events = await query_event_db(paths, 0, limit=3)
        assert [e.timestamp for e in events] == [1001.0, 1002.0, 1002.0]
        assert [e.type for e in events][-2:] == ["stage.started", "stage.completed"]

    @pytest.mark.asyncio
    async def test_falls_back_without_events_table(self, paths):
        paths.events_db.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(paths.events_db) as db:
            await db.execute("CREATE TABLE other (x INTEGER)")
            await db.commit()
        write_events(paths, [event("from.log", 100)])
        events = await load_events(paths, 0)
        assert [e.type for e in events] == ["from.log"]

    @pytest.mark.asyncio
    async def test_falls_back_when_database_missing(self, paths):
        write_events(paths, [event("from.log", 100)])
        assert [e.type for e in await load_events(paths, 0)] == ["from.log"]


class TestDaemonSnapshot:
    def test_missing_is_none(self, paths):
        assert read_daemon_snapshot(paths.daemon_state) is None

    def test_queue_accepts_numbers_and_objects(self, paths):
        write_json(
            paths.daemon_state,
            {
                "pid": 4242,
                "max_parallel": 3,
                "active_jobs": [{"issue": 7, "title": "Add login", "pid": 99}, {"bad": True}],
                "queued": [11, {"issue": 12, "title": "Docs", "score": 3.5}, "junk", True],
            },
        )
        snapshot = read_daemon_snapshot(paths.daemon_state)
        assert snapshot.pid == 4242
        assert snapshot.max_parallel == 3
        assert snapshot.poll_interval == 30
        assert [j.work_item_id for j in snapshot.active_jobs] == [7]
        assert [(q.work_item_id, q.title) for q in snapshot.queued] == [(11, ""), (12, "Docs")]

    def test_truncated_document_is_none(self, paths):
        paths.state_dir.mkdir(parents=True)
        paths.daemon_state.write_text('{"pid": 1, "active_jobs": [')
        assert read_daemon_snapshot(paths.daemon_state) is None


class TestHeartbeats:
    def test_missing_directory(self, paths):
        assert read_heartbeats(paths.heartbeat_dir) == []

    def test_skips_malformed_files(self, paths):
        write_json(paths.heartbeat_dir / "agent-1.json", {"issue": 7, "stage": "build"})
        (paths.heartbeat_dir / "agent-2.json").write_text("{oops")
        (paths.heartbeat_dir / "notes.txt").write_text("ignored")
        heartbeats = read_heartbeats(paths.heartbeat_dir)
        assert [hb.agent_id for hb in heartbeats] == ["agent-1"]
        assert heartbeats[0].machine == "localhost"

    def test_age_and_status(self):
        hb = Heartbeat(agent_id="a", updated_at="2024-01-01T00:00:00Z")
        start = parse_ts("2024-01-01T00:00:00Z")
        assert hb.age(start + 10) == 10
        assert heartbeat_status(10) == "active"
        assert heartbeat_status(60) == "idle"
        assert heartbeat_status(121) == "stale"

    def test_unparseable_timestamp_is_stale(self):
        hb = Heartbeat(agent_id="a", updated_at="yesterday")
        assert heartbeat_status(hb.age(time.time())) == "stale"


class TestOtherReaders:
    def test_machines_skip_nameless(self, paths):
        write_json(
            paths.machines_file,
            {"machines": [{"name": "m1", "host": "10.0.0.1"}, {"host": "nameless"}, "x"]},
        )
        machines = read_machines(paths.machines_file)
        assert [m.name for m in machines] == ["m1"]
        assert machines[0].max_workers == 4

    def test_costs_and_budget(self, paths):
        write_json(
            paths.costs_file,
            {"entries": [{"cost_usd": 1.5, "ts_epoch": 10, "model": "opus"}, "bad"]},
        )
        write_json(paths.budget_file, {"daily_budget_usd": 20, "enabled": True})
        entries = read_cost_entries(paths.costs_file)
        assert len(entries) == 1
        assert entries[0].cost_usd == 1.5
        assert read_budget(paths.budget_file).daily_budget_usd == 20.0

    def test_missing_budget_defaults(self, paths):
        budget = read_budget(paths.budget_file)
        assert budget.daily_budget_usd == 0.0
        assert budget.enabled is False

    def test_log_progress(self, paths):
        log = paths.log_file(7)
        log.parent.mkdir(parents=True)
        log.write_text(
            "Iteration 1/20\n 3 files changed, 40 insertions(+)\n"
            "Iteration 2/20\n 1 file changed, 2 insertions(+)\nTests: passed\n"
        )
        progress = read_log_progress(log)
        assert progress.iteration == 2
        assert progress.max_iterations == 20
        assert progress.lines_written == 42
        assert progress.tests_passing is True

    def test_missing_log_progress(self, paths):
        progress = read_log_progress(paths.log_file(1))
        assert progress.iteration == 0
        assert progress.max_iterations == 20


class TestAtomicWrites:
    def test_replaces_whole_file(self, tmp_path):
        target = tmp_path / "nested" / "doc.json"
        write_json_atomic(target, {"a": 1})
        write_json_atomic(target, {"b": 2})
        assert json.loads(target.read_text()) == {"b": 2}
        assert [p.name for p in target.parent.iterdir()] == ["doc.json"]

    def test_concurrent_producers_never_lose_the_latest_write(self, paths):
        """Each producer rewrites its own heartbeat file; readers see whole documents."""
        producers = 8
        writes = 50

        def produce(n: int) -> None:
            for i in range(writes):
                write_json_atomic(
                    paths.heartbeat_dir / f"agent-{n}.json",
                    {"issue": n + 1, "iteration": i, "updated_at": "2024-01-01T00:00:00Z"},
                )

        paths.heartbeat_dir.mkdir(parents=True)
        with ThreadPoolExecutor(max_workers=producers + 1) as pool:
            futures = [pool.submit(produce, n) for n in range(producers)]
            # Reads racing the writers must only ever see complete documents.
            while not all(f.done() for f in futures):
                for hb in read_heartbeats(paths.heartbeat_dir):
                    assert hb.work_item_id > 0
            for f in futures:
                f.result()

        heartbeats = read_heartbeats(paths.heartbeat_dir)
        assert len(heartbeats) == producers
        assert {hb.iteration for hb in heartbeats} == {writes - 1}

    def test_failed_write_leaves_no_temp_file(self, tmp_path, monkeypatch):
        target = tmp_path / "doc.txt"
        write_atomic(target, "original")

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("fleetdeck.stores.atomic.os.replace", boom)
        with pytest.raises(OSError):
            write_atomic(target, "new")
        assert target.read_text() == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["doc.txt"]


class TestTokenStore:
    def test_single_use(self, tmp_path):
        store = TokenStore(tmp_path / "tokens.json", ttl_hours=1)
        record = store.issue(label="m1")
        assert store.redeem(record.token).data == {"label": "m1"}
        with pytest.raises(TokenError) as exc:
            store.redeem(record.token)
        assert exc.value.reason == "used"

    def test_unknown_and_expired(self, tmp_path):
        store = TokenStore(tmp_path / "tokens.json", ttl_hours=1)
        with pytest.raises(TokenError) as exc:
            store.redeem("nope")
        assert exc.value.reason == "unknown"

        record = store.issue(now=1000.0)
        with pytest.raises(TokenError) as exc:
            store.redeem(record.token, now=1000.0 + 3600)
        assert exc.value.reason == "expired"

    @pytest.mark.asyncio
    async def test_concurrent_redemption_has_one_winner(self, tmp_path):
        store = TokenStore(tmp_path / "tokens.json", ttl_hours=1)
        token = store.issue().token

        async def attempt() -> bool:
            await asyncio.sleep(0)
            try:
                store.redeem(token)
            except TokenError:
                return False
            return True

        results = await asyncio.gather(*(attempt() for _ in range(5)))
        assert sorted(results) == [False, False, False, False, True]

    def test_used_state_survives_reload(self, tmp_path):
        path = tmp_path / "tokens.json"
        store = TokenStore(path, ttl_hours=1)
        token = store.issue().token
        store.redeem(token)

        reloaded = TokenStore(path, ttl_hours=1)
        assert reloaded.get(token).used is True
        with pytest.raises(TokenError):
            reloaded.redeem(token)

    def test_purge_expired(self, tmp_path):
        store = TokenStore(tmp_path / "tokens.json", ttl_hours=1)
        old = store.issue(now=0.0)
        fresh = store.issue(now=10_000.0)
        assert store.purge_expired(now=5000.0) == 1
        assert store.get(old.token) is None
        assert store.get(fresh.token) is not None
        assert len(store) == 1
