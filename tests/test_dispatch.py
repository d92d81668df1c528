"""Tests for the durable run queue and the worker pool.

Tests cover:
- Claim order: priority first, then submission order
- Atomic claims across threads
- Lease-based recovery of jobs orphaned by a crashed process
- Duplicate run ids
- Queue cancellation and stop requests for claimed jobs
- Worker pool draining and job-level failures
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from nodeflow.core.context import RunStatus
from nodeflow.core.coordinator import RunCoordinator, RunOptions
from nodeflow.core.dispatch import RunQueue, WorkerPool
from nodeflow.core.errors import DuplicateRunError
from nodeflow.core.runner import NodeRunner


@pytest.fixture
def queue(test_db) -> RunQueue:
    return RunQueue(test_db)


@pytest.fixture
def pool(queue, store, registry) -> WorkerPool:
    coordinator = RunCoordinator(NodeRunner(registry), store=store)
    return WorkerPool(queue, coordinator, store, size=2, poll_interval=0.01)


class TestRunQueue:
    def test_submit_and_claim(self, queue):
        run_id = queue.submit("wf-1", {"x": 1})
        assert queue.get_status(run_id) == "queued"

        job = queue.claim()
        assert job.run_id == run_id
        assert job.workflow_id == "wf-1"
        assert job.initial_input == {"x": 1}
        assert job.attempts == 1
        assert queue.get_status(run_id) == "running"
        assert queue.claim() is None

    def test_priority_then_fifo(self, queue):
        queue.submit("wf", run_id="low-1")
        queue.submit("wf", run_id="high", priority=5)
        queue.submit("wf", run_id="low-2")

        claimed = [queue.claim().run_id for _ in range(3)]
        assert claimed == ["high", "low-1", "low-2"]

    def test_none_input_round_trips(self, queue):
        queue.submit("wf", None, run_id="r1")
        assert queue.claim().initial_input is None

    def test_complete_and_fail(self, queue):
        queue.submit("wf", run_id="ok")
        queue.submit("wf", run_id="bad")
        queue.complete("ok", RunStatus.COMPLETED)
        queue.fail("bad", "exploded")

        assert queue.get_status("ok") == "completed"
        assert queue.get_status("bad") == "failed"
        assert queue.pending_count() == 0

    def test_cancel_only_queued(self, queue):
        queue.submit("wf", run_id="waiting")
        queue.submit("wf", run_id="busy", priority=1)
        queue.claim()

        assert queue.cancel("waiting") is True
        assert queue.cancel("busy") is False
        assert queue.cancel("unknown") is False
        assert queue.get_status("waiting") == "cancelled"

    def test_recover_stale(self, queue):
        queue.submit("wf", run_id="r1")
        queue.claim()

        assert queue.recover_stale(stale_after=0) == 1
        job = queue.claim()
        assert job.run_id == "r1"
        assert job.attempts == 2

    def test_recover_stale_spares_live_leases(self, queue):
        queue.submit("wf", run_id="r1")
        queue.claim()
        assert queue.heartbeat(["r1"]) == []

        assert queue.recover_stale(stale_after=3600) == 0
        assert queue.get_status("r1") == "running"

    def test_duplicate_run_id_rejected(self, queue):
        queue.submit("wf", run_id="r1")
        with pytest.raises(DuplicateRunError, match="r1"):
            queue.submit("wf", run_id="r1")
        assert queue.pending_count() == 1

    def test_recorded_run_id_rejected(self, queue, store, workflow_factory):
        summary = asyncio.run(
            RunCoordinator(NodeRunner(store.registry), store=store).execute_workflow(
                workflow_factory({"a": "set"}), options=RunOptions(run_id="done")
            )
        )
        assert summary.status == RunStatus.COMPLETED
        assert queue.exists("done")
        with pytest.raises(DuplicateRunError):
            queue.submit("wf-test", run_id="done")

    def test_request_stop_only_for_running(self, queue):
        queue.submit("wf", run_id="waiting")
        assert queue.request_stop("waiting") is False
        queue.claim()
        assert queue.request_stop("waiting") is True
        assert queue.stop_requested("waiting")
        assert queue.heartbeat(["waiting", "unknown"]) == ["waiting"]

    def test_concurrent_claims_are_exclusive(self, queue):
        for i in range(20):
            queue.submit("wf", run_id=f"r{i}")
        claimed: list[str] = []
        lock = threading.Lock()

        def claim_all():
            while (job := queue.claim()) is not None:
                with lock:
                    claimed.append(job.run_id)

        threads = [threading.Thread(target=claim_all) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(f"r{i}" for i in range(20))


class TestWorkerPool:
    def test_drain_runs_queued_jobs(self, pool, queue, store, workflow_factory):
        store.save_workflow(
            workflow_factory({"a": ("set", {"values": {"x": 1}})}, workflow_id="wf-q")
        )
        ids = [queue.submit("wf-q") for _ in range(3)]

        processed = asyncio.run(pool.drain())

        assert processed == 3
        for run_id in ids:
            assert queue.get_status(run_id) == "completed"
            assert store.get_run(run_id).node_results["a"].output == {"x": 1}

    def test_initial_input_reaches_root(self, pool, queue, store, workflow_factory, call_log):
        store.save_workflow(workflow_factory({"a": "record"}, workflow_id="wf-in"))
        queue.submit("wf-in", {"hello": "world"})
        asyncio.run(pool.drain())
        assert call_log == [("a", {"hello": "world"})]

    def test_failed_run_status_recorded(self, pool, queue, store, workflow_factory):
        store.save_workflow(
            workflow_factory(
                {"a": {"type": "fail", "options": {"runFatal": True}}}, workflow_id="wf-fail"
            )
        )
        run_id = queue.submit("wf-fail")
        asyncio.run(pool.drain())
        assert queue.get_status(run_id) == "failed"
        assert store.get_run(run_id).error == "Node 'a' failed: boom"

    def test_missing_workflow_fails_only_that_job(self, pool, queue, store, workflow_factory):
        store.save_workflow(workflow_factory({"a": "set"}, workflow_id="wf-ok"))
        missing = queue.submit("wf-missing", priority=1)
        ok = queue.submit("wf-ok")

        assert asyncio.run(pool.drain()) == 2
        assert queue.get_status(missing) == "failed"
        assert queue.get_status(ok) == "completed"
        with queue.db._connect() as conn:
            error = conn.execute(
                "SELECT error FROM run_queue WHERE run_id = ?", (missing,)
            ).fetchone()[0]
        assert "wf-missing" in error

    def test_start_and_stop(self, pool, queue, store, workflow_factory):
        store.save_workflow(workflow_factory({"a": "set"}, workflow_id="wf-bg"))
        run_id = queue.submit("wf-bg")

        async def scenario():
            pool.start()
            for _ in range(200):
                if queue.get_status(run_id) == "completed":
                    break
                await asyncio.sleep(0.01)
            await pool.stop()

        asyncio.run(scenario())
        assert queue.get_status(run_id) == "completed"
        assert pool.running is False

    def test_start_recovers_stale_jobs(self, pool, queue, mocker):
        recover = mocker.patch.object(queue, "recover_stale", return_value=0)

        async def scenario():
            pool.start()
            await pool.stop()

        asyncio.run(scenario())
        recover.assert_called_once_with(pool.stale_after)

    def test_stop_while_workflow_loads_cancels_run(
        self, pool, queue, store, workflow_factory, call_log, mocker
    ):
        store.save_workflow(workflow_factory({"a": "record"}, workflow_id="wf-stop"))
        queue.submit("wf-stop", run_id="r-stop")
        job = queue.claim()
        load = store.load_workflow
        acknowledged: list[bool] = []

        def load_then_stop(workflow_id):
            acknowledged.append(pool.coordinator.stop("r-stop"))
            return load(workflow_id)

        mocker.patch.object(store, "load_workflow", side_effect=load_then_stop)

        assert asyncio.run(pool.run_job(job)) == RunStatus.CANCELLED
        assert acknowledged == [True]
        assert call_log == []
        assert queue.get_status("r-stop") == "cancelled"

    def test_stop_requested_through_queue_before_start(
        self, pool, queue, store, workflow_factory, call_log
    ):
        store.save_workflow(workflow_factory({"a": "record"}, workflow_id="wf-flag"))
        queue.submit("wf-flag", run_id="r-flag")
        job = queue.claim()
        assert queue.request_stop("r-flag")

        assert asyncio.run(pool.run_job(job)) == RunStatus.CANCELLED
        assert call_log == []

    def test_heartbeat_applies_stop_from_another_process(
        self, pool, queue, store, workflow_factory, registry
    ):
        async def poll(node, ctx):
            for _ in range(500):
                ctx.check_cancelled()
                await asyncio.sleep(0.01)
            return "finished"

        registry.register_legacy("poll", poll)
        store.save_workflow(workflow_factory({"p": "poll"}, workflow_id="wf-long"))
        queue.submit("wf-long", run_id="r-long")

        async def scenario():
            pool.start()
            for _ in range(200):
                if pool.coordinator.is_active("r-long"):
                    break
                await asyncio.sleep(0.01)
            # Another process only has the database
            await asyncio.to_thread(RunQueue(queue.db).request_stop, "r-long")
            for _ in range(300):
                if queue.get_status("r-long") == "cancelled":
                    break
                await asyncio.sleep(0.01)
            await pool.stop()

        asyncio.run(scenario())
        assert queue.get_status("r-long") == "cancelled"
        assert store.get_run("r-long").status == RunStatus.CANCELLED
