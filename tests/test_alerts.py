"""Tests for the alert engine and historical rollups."""

from __future__ import annotations

from fleetdeck.metrics.alerts import (
    CRITICAL,
    WARNING,
    ClaimConflict,
    budget_alerts,
    compute_alerts,
    failure_spike_alerts,
    heartbeat_alerts,
    queue_alerts,
    stuck_alerts,
)
from fleetdeck.metrics.history import (
    cost_breakdown,
    metrics_history,
    stage_performance,
    today_spend,
)
from fleetdeck.stores.models import (
    ActiveJob,
    CostEntry,
    DaemonSnapshot,
    Event,
    Heartbeat,
    QueuedItem,
)

NOW = 1_700_000_000.0


def ev(type_: str, at: float, item: int | None = None, **kw) -> Event:
    return Event(timestamp=at, type=type_, work_item_id=item, **kw)


class TestStuckPipelines:
    def test_no_transition_for_over_thirty_minutes(self):
        snapshot = DaemonSnapshot(active_jobs=(ActiveJob(7, started_epoch=NOW - 3600),))
        events = [ev("stage.started", NOW - 45 * 60, 7, stage="build")]
        alerts = stuck_alerts(snapshot, events, NOW)
        assert len(alerts) == 1
        assert alerts[0].type == "stuck_pipeline"
        assert alerts[0].work_item_id == 7
        assert "45 minutes" in alerts[0].message

    def test_recent_transition_is_fine(self):
        snapshot = DaemonSnapshot(active_jobs=(ActiveJob(7, started_epoch=NOW - 3600),))
        events = [ev("stage.completed", NOW - 60, 7, stage="build")]
        assert stuck_alerts(snapshot, events, NOW) == []

    def test_falls_back_to_job_start(self):
        snapshot = DaemonSnapshot(active_jobs=(ActiveJob(8, started_epoch=NOW - 31 * 60),))
        assert [a.work_item_id for a in stuck_alerts(snapshot, [], NOW)] == [8]

    def test_no_snapshot(self):
        assert stuck_alerts(None, [], NOW) == []


class TestThresholdAlerts:
    def test_budget(self):
        assert budget_alerts(50, 100) == []
        assert budget_alerts(85, 100)[0].severity == WARNING
        assert budget_alerts(96, 100)[0].severity == CRITICAL
        assert budget_alerts(500, 0) == []

    def test_queue_depth(self):
        assert queue_alerts(10) == []
        assert queue_alerts(11)[0].severity == WARNING
        assert queue_alerts(21)[0].severity == CRITICAL

    def test_failure_spike(self):
        failures = [ev("pipeline.failed", NOW - i * 60, i) for i in range(1, 4)]
        assert failure_spike_alerts(failures, NOW) == []
        failures.append(ev("pipeline.completed", NOW - 30, 9, result="error"))
        alerts = failure_spike_alerts(failures, NOW)
        assert alerts[0].type == "failure_spike"
        assert alerts[0].severity == CRITICAL

    def test_old_failures_do_not_spike(self):
        failures = [ev("pipeline.failed", NOW - 7200 - i, i) for i in range(1, 10)]
        assert failure_spike_alerts(failures, NOW) == []

    def test_stale_heartbeat(self):
        stale = Heartbeat(agent_id="agent-1", work_item_id=4, updated_at="2023-11-14T22:00:00Z")
        alerts = heartbeat_alerts([stale], NOW)
        assert alerts[0].type == "stale_heartbeat"
        assert alerts[0].work_item_id == 4


class TestComputeAlerts:
    def test_critical_sorted_first_and_conflicts_reported(self):
        snapshot = DaemonSnapshot(queued=tuple(QueuedItem(n) for n in range(12)))
        alerts = compute_alerts(
            snapshot=snapshot,
            events=[],
            heartbeats=[],
            spent=0,
            budget=0,
            now=NOW,
            claim_conflicts=[ClaimConflict(5, ("m1", "m2"))],
        )
        assert [a.type for a in alerts] == ["double_claim", "queue_depth"]
        assert alerts[0].to_dict()["issue"] == 5
        assert "m1, m2" in alerts[0].message

    def test_quiet_fleet_has_no_alerts(self):
        assert (
            compute_alerts(snapshot=None, events=[], heartbeats=[], spent=0, budget=10, now=NOW)
            == []
        )


class TestHistory:
    def test_metrics_history(self):
        events = [
            ev("stage.completed", NOW - 500, 1, stage="build", duration=100),
            ev("stage.completed", NOW - 400, 2, stage="build", duration=300),
            ev("pipeline.completed", NOW - 300, 1, result="success", duration=600),
            ev("pipeline.failed", NOW - 200, 2),
        ]
        history = metrics_history(events, NOW)
        assert history["total_completed"] == 1
        assert history["total_failed"] == 1
        assert history["success_rate"] == 50.0
        assert history["avg_duration_s"] == 600
        assert history["stage_durations"] == {"build": 200}
        assert len(history["daily_counts"]) == 7
        assert sum(d["completed"] for d in history["daily_counts"]) == 1
        assert history["dora_grades"]["period_days"] == 30

    def test_stage_performance(self):
        events = [
            ev("stage.completed", NOW - 100, 1, stage="test", duration=10),
            ev("stage.completed", NOW - 90, 2, stage="test", duration=30),
            ev("stage.completed", NOW - 30 * 86400, 3, stage="test", duration=999),
        ]
        (row,) = stage_performance(events, NOW, period_days=7)
        assert row == {"stage": "test", "avg_s": 20, "min_s": 10, "max_s": 30, "count": 2}

    def test_costs(self):
        entries = [
            CostEntry(
                cost_usd=1.25, ts_epoch=NOW - 60, model="opus", stage="build", work_item_id=7
            ),
            CostEntry(cost_usd=0.75, ts_epoch=NOW - 120, model="sonnet", work_item_id=8),
            CostEntry(cost_usd=9.0, ts_epoch=NOW - 30 * 86400, model="opus"),
        ]
        assert today_spend(entries, NOW) == 2.0
        breakdown = cost_breakdown(entries, 10.0, NOW, period_days=7)
        assert breakdown["spent"] == 2.0
        assert breakdown["by_model"] == {"opus": 1.25, "sonnet": 0.75}
        assert breakdown["by_stage"] == {"build": 1.25, "unknown": 0.75}
        assert breakdown["by_issue"][0] == {"issue": 7, "cost": 1.25}
