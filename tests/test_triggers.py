"""Tests for time-based triggers.

Tests cover:
- Schedule discovery from settings and from schedule trigger nodes
- Interval and cron due-time calculation
- One catch-up run after downtime, not one per missed window
- Reconciling the trigger table with stored workflows
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from nodeflow.core.dispatch import RunQueue
from nodeflow.core.graph_schema import ScheduleSpec
from nodeflow.core.triggers import (
    TriggerError,
    TriggerScheduler,
    interval_to_seconds,
    latest_due,
    schedule_from_definition,
)

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def queue(test_db) -> RunQueue:
    return RunQueue(test_db)


@pytest.fixture
def scheduler(store, queue) -> TriggerScheduler:
    return TriggerScheduler(store, queue)


class TestScheduleDiscovery:
    def test_settings_schedule(self, workflow_factory):
        wf = workflow_factory({"a": "set"}, schedule={"intervalSeconds": 60})
        assert schedule_from_definition(wf).interval_seconds == 60

    def test_cron_node(self, workflow_factory):
        wf = workflow_factory({"t": ("schedule", {"cron": "0 * * * *"}), "a": "set"}, [("t", "a")])
        spec = schedule_from_definition(wf)
        assert spec.cron == "0 * * * *"
        assert spec.timezone == "UTC"

    def test_interval_node(self, workflow_factory):
        wf = workflow_factory(
            {"t": ("schedule-trigger", {"triggerInterval": 2, "triggerIntervalUnit": "hours"})}
        )
        assert schedule_from_definition(wf).interval_seconds == 7200

    def test_interval_defaults_to_minutes(self, workflow_factory):
        wf = workflow_factory({"t": ("schedule", {"triggerInterval": 5})})
        assert schedule_from_definition(wf).interval_seconds == 300

    def test_no_schedule(self, workflow_factory):
        assert schedule_from_definition(workflow_factory({"a": "manual-trigger"})) is None

    def test_interval_units(self):
        assert interval_to_seconds(1.5, "minutes") == 90
        with pytest.raises(TriggerError):
            interval_to_seconds(1, "fortnights")
        with pytest.raises(TriggerError):
            interval_to_seconds(0, "seconds")

    def test_schedule_requires_exactly_one(self):
        with pytest.raises(ValueError):
            ScheduleSpec()
        with pytest.raises(ValueError):
            ScheduleSpec(cron="* * * * *", interval_seconds=60)


class TestLatestDue:
    def test_interval_not_yet_due(self):
        spec = ScheduleSpec(interval_seconds=60)
        assert latest_due(spec, T0, T0 + timedelta(seconds=59)) is None

    def test_interval_latest_window(self):
        spec = ScheduleSpec(interval_seconds=60)
        due = latest_due(spec, T0, T0 + timedelta(minutes=5, seconds=30))
        assert due == T0 + timedelta(minutes=5)

    def test_cron_previous_tick(self):
        spec = ScheduleSpec(cron="0 * * * *")
        due = latest_due(spec, T0, T0 + timedelta(hours=3, minutes=10))
        assert due == T0 + timedelta(hours=3)

    def test_cron_exact_boundary_is_due(self):
        spec = ScheduleSpec(cron="0 * * * *")
        assert latest_due(spec, T0, T0 + timedelta(hours=1)) == T0 + timedelta(hours=1)

    def test_cron_already_fired(self):
        spec = ScheduleSpec(cron="0 * * * *")
        assert latest_due(spec, T0, T0 + timedelta(minutes=30)) is None

    def test_cron_in_timezone(self):
        # 09:00 in New York is 14:00 UTC in March before DST starts
        spec = ScheduleSpec(cron="0 9 * * *", timezone="America/New_York")
        due = latest_due(spec, T0, T0 + timedelta(hours=3))
        assert due == datetime(2024, 3, 1, 14, 0, tzinfo=UTC)


class TestTriggerScheduler:
    def test_add_and_list(self, scheduler):
        trigger = scheduler.add("wf-1", ScheduleSpec(interval_seconds=60), now=T0)
        assert trigger.last_fired_at == T0
        assert [t.workflow_id for t in scheduler.list_triggers()] == ["wf-1"]

    def test_add_rejects_bad_cron(self, scheduler):
        with pytest.raises(TriggerError, match="Invalid cron"):
            scheduler.add("wf-1", ScheduleSpec(cron="not a cron"))

    def test_add_rejects_bad_timezone(self, scheduler):
        with pytest.raises(TriggerError, match="Unknown timezone"):
            scheduler.add("wf-1", ScheduleSpec(interval_seconds=60, timezone="Mars/Olympus"))

    def test_update_keeps_last_fired(self, scheduler):
        scheduler.add("wf-1", ScheduleSpec(interval_seconds=60), now=T0)
        scheduler.add("wf-1", ScheduleSpec(interval_seconds=120), now=T0 + timedelta(hours=1))
        trigger = scheduler.get("wf-1")
        assert trigger.last_fired_at == T0
        assert trigger.spec.interval_seconds == 120

    def test_tick_fires_once_after_downtime(self, scheduler, queue):
        scheduler.add("wf-1", ScheduleSpec(interval_seconds=60), now=T0)

        fired = scheduler.tick(now=T0 + timedelta(minutes=10, seconds=5))
        assert len(fired) == 1
        assert queue.pending_count() == 1
        assert scheduler.get("wf-1").last_fired_at == T0 + timedelta(minutes=10)

        # Same window: nothing more to do
        assert scheduler.tick(now=T0 + timedelta(minutes=10, seconds=30)) == []

    def test_tick_input_describes_trigger(self, scheduler, queue):
        scheduler.add("wf-1", ScheduleSpec(interval_seconds=60), now=T0)
        scheduler.tick(now=T0 + timedelta(minutes=1))

        job = queue.claim()
        assert job.workflow_id == "wf-1"
        assert job.initial_input["trigger"]["type"] == "schedule"
        assert job.initial_input["trigger"]["scheduledAt"] == (T0 + timedelta(minutes=1)).isoformat()

    def test_disabled_trigger_does_not_fire(self, scheduler):
        scheduler.add("wf-1", ScheduleSpec(interval_seconds=60, enabled=False), now=T0)
        assert scheduler.tick(now=T0 + timedelta(hours=1)) == []

    def test_remove(self, scheduler):
        scheduler.add("wf-1", ScheduleSpec(interval_seconds=60), now=T0)
        assert scheduler.remove("wf-1") is True
        assert scheduler.remove("wf-1") is False
        assert scheduler.tick(now=T0 + timedelta(hours=1)) == []


class TestSyncFromStore:
    def test_sync_adds_and_removes(self, scheduler, store, workflow_factory):
        store.save_workflow(
            workflow_factory({"t": ("schedule", {"cron": "*/5 * * * *"})}, workflow_id="wf-cron")
        )
        store.save_workflow(workflow_factory({"a": "set"}, workflow_id="wf-manual"))
        scheduler.add("wf-gone", ScheduleSpec(interval_seconds=60), now=T0)

        assert scheduler.sync_from_store(now=T0) == 1
        assert [t.workflow_id for t in scheduler.list_triggers()] == ["wf-cron"]

    def test_deleting_workflow_drops_trigger(self, scheduler, store, workflow_factory):
        store.save_workflow(
            workflow_factory({"a": "set"}, workflow_id="wf-int", schedule={"intervalSeconds": 30})
        )
        scheduler.sync_from_store(now=T0)
        store.delete_workflow("wf-int")
        assert scheduler.list_triggers() == []

    def test_invalid_cron_is_skipped(self, scheduler, store, workflow_factory):
        store.save_workflow(
            workflow_factory({"t": ("schedule", {"cron": "every tuesday"})}, workflow_id="wf-bad")
        )
        assert scheduler.sync_from_store(now=T0) == 0
        assert scheduler.list_triggers() == []
