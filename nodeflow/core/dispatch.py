"""Background dispatch: durable run queue and asyncio worker pool.

Runs submitted to the ``RunQueue`` survive process restarts. Workers claim
jobs atomically (``BEGIN IMMEDIATE``) and hold them on a lease: the owning
pool refreshes ``heartbeat_at`` while a job runs, and ``recover_stale()``
only requeues ``running`` rows whose heartbeat is older than the lease. That
lets several worker processes share one database without re-running each
other's jobs.

Stop requests for claimed jobs are recorded in ``cancel_requested``; the
owning pool picks them up on its next heartbeat.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import Any

from nodeflow.core.context import RunStatus
from nodeflow.core.coordinator import RunCoordinator, RunOptions
from nodeflow.core.errors import DuplicateRunError
from nodeflow.core.state import Database, WorkflowStore, safe_json_dumps

logger = logging.getLogger(__name__)

# Seconds without a heartbeat before a running job is presumed orphaned
DEFAULT_STALE_AFTER = 300.0


@dataclass
class QueuedRun:
    run_id: str
    workflow_id: str
    initial_input: Any
    priority: int
    attempts: int = 0


class RunQueue:
    """Durable FIFO-within-priority queue of runs, stored in ``run_queue``."""

    def __init__(self, db: Database):
        self.db = db

    def submit(
        self,
        workflow_id: str,
        initial_input: Any = None,
        run_id: str | None = None,
        priority: int = 0,
    ) -> str:
        """Queue a run and return its id.

        Raises:
            DuplicateRunError: ``run_id`` is already queued or recorded.
        """
        run_id = run_id or str(uuid.uuid4())
        try:
            with self.db.transaction() as conn:
                if conn.execute("SELECT 1 FROM runs WHERE id = ?", (run_id,)).fetchone():
                    raise DuplicateRunError(f"Run {run_id} already exists")
                conn.execute(
                    """
                    INSERT INTO run_queue (run_id, workflow_id, initial_input, priority, status)
                    VALUES (?, ?, ?, ?, 'queued')
                    """,
                    (run_id, workflow_id, safe_json_dumps(initial_input), priority),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRunError(f"Run {run_id} already exists") from e
        logger.info(f"Queued run {run_id} for workflow '{workflow_id}' (priority {priority})")
        return run_id

    def exists(self, run_id: str) -> bool:
        """True if the id is taken by a queued job or a recorded run."""
        with self.db._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM run_queue WHERE run_id = ?
                UNION ALL
                SELECT 1 FROM runs WHERE id = ?
                """,
                (run_id, run_id),
            ).fetchone()
        return row is not None

    def claim(self) -> QueuedRun | None:
        """Atomically take the highest-priority, oldest queued job."""
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT run_id, workflow_id, initial_input, priority, attempts FROM run_queue
                WHERE status = 'queued'
                ORDER BY priority DESC, enqueued_at ASC, rowid ASC
                LIMIT 1
                """
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE run_queue
                SET status = 'running', attempts = attempts + 1,
                    claimed_at = CURRENT_TIMESTAMP, heartbeat_at = CURRENT_TIMESTAMP
                WHERE run_id = ? AND status = 'queued'
                """,
                (row["run_id"],),
            )
        return QueuedRun(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            initial_input=json.loads(row["initial_input"]) if row["initial_input"] else None,
            priority=row["priority"],
            attempts=row["attempts"] + 1,
        )

    def complete(self, run_id: str, status: RunStatus | str) -> None:
        status = status.value if isinstance(status, RunStatus) else status
        with self.db._connect() as conn:
            conn.execute(
                "UPDATE run_queue SET status = ?, finished_at = CURRENT_TIMESTAMP WHERE run_id = ?",
                (status, run_id),
            )

    def fail(self, run_id: str, error: str) -> None:
        with self.db._connect() as conn:
            conn.execute(
                """
                UPDATE run_queue SET status = 'failed', error = ?, finished_at = CURRENT_TIMESTAMP
                WHERE run_id = ?
                """,
                (error, run_id),
            )

    def cancel(self, run_id: str) -> bool:
        """Withdraw a job that has not been claimed yet."""
        with self.db._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE run_queue SET status = 'cancelled', finished_at = CURRENT_TIMESTAMP
                WHERE run_id = ? AND status = 'queued'
                """,
                (run_id,),
            )
            return cursor.rowcount > 0

    def request_stop(self, run_id: str) -> bool:
        """Flag a claimed job for cancellation. Returns False unless it is running."""
        with self.db._connect() as conn:
            cursor = conn.execute(
                "UPDATE run_queue SET cancel_requested = 1 WHERE run_id = ? AND status = 'running'",
                (run_id,),
            )
            return cursor.rowcount > 0

    def stop_requested(self, run_id: str) -> bool:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT cancel_requested FROM run_queue WHERE run_id = ?", (run_id,)
            ).fetchone()
        return bool(row and row["cancel_requested"])

    def heartbeat(self, run_ids: list[str]) -> list[str]:
        """Renew the lease on running jobs; returns those with a pending stop request."""
        if not run_ids:
            return []
        placeholders = ", ".join("?" for _ in run_ids)
        with self.db._connect() as conn:
            conn.execute(
                f"""
                UPDATE run_queue SET heartbeat_at = CURRENT_TIMESTAMP
                WHERE status = 'running' AND run_id IN ({placeholders})
                """,
                run_ids,
            )
            rows = conn.execute(
                f"""
                SELECT run_id FROM run_queue
                WHERE status = 'running' AND cancel_requested = 1 AND run_id IN ({placeholders})
                """,
                run_ids,
            ).fetchall()
        return [row["run_id"] for row in rows]

    def recover_stale(self, stale_after: float = DEFAULT_STALE_AFTER) -> int:
        """Requeue running jobs whose owner stopped heartbeating ``stale_after`` seconds ago."""
        with self.db._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE run_queue
                SET status = 'queued', claimed_at = NULL, heartbeat_at = NULL
                WHERE status = 'running'
                  AND (heartbeat_at IS NULL OR heartbeat_at <= datetime('now', ?))
                """,
                (f"-{stale_after:.3f} seconds",),
            )
            count = cursor.rowcount
        if count:
            logger.warning(f"Recovered {count} stale run(s) idle for {stale_after:.0f}s")
        return count

    def pending_count(self) -> int:
        with self.db._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM run_queue WHERE status = 'queued'"
            ).fetchone()[0]

    def get_status(self, run_id: str) -> str | None:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT status FROM run_queue WHERE run_id = ?", (run_id,)
            ).fetchone()
        return row["status"] if row else None


class WorkerPool:
    """
    Pool of asyncio workers that execute queued runs.

    Design:
    - Each worker polls the queue and runs one job at a time
    - Job-level errors (missing workflow, bad graph) fail that job only
    - A heartbeat task renews leases on in-flight jobs, applies stop
      requests made through the queue and requeues orphaned jobs
    """

    def __init__(
        self,
        queue: RunQueue,
        coordinator: RunCoordinator,
        store: WorkflowStore,
        size: int = 4,
        poll_interval: float = 1.0,
        stale_after: float = DEFAULT_STALE_AFTER,
    ):
        self.queue = queue
        self.coordinator = coordinator
        self.store = store
        self.size = max(1, size)
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self.running = False
        self._workers: list[asyncio.Task] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._in_flight: set[str] = set()

    async def run_job(self, job: QueuedRun) -> RunStatus | None:
        """Execute one claimed job and settle its queue row."""
        logger.info(f"Worker picked up run {job.run_id} (workflow '{job.workflow_id}')")
        self._in_flight.add(job.run_id)
        self.coordinator.reserve(job.run_id)
        try:
            definition = await asyncio.to_thread(self.store.load_workflow, job.workflow_id)
            if await asyncio.to_thread(self.queue.stop_requested, job.run_id):
                self.coordinator.stop(job.run_id)
            summary = await self.coordinator.execute_workflow(
                definition, job.initial_input, RunOptions(run_id=job.run_id, initiator="queue")
            )
        except Exception as e:
            logger.error(f"Run {job.run_id} failed before completion: {e}")
            await asyncio.to_thread(self.queue.fail, job.run_id, str(e))
            return None
        finally:
            self.coordinator.release(job.run_id)
            self._in_flight.discard(job.run_id)
        await asyncio.to_thread(self.queue.complete, job.run_id, summary.status)
        return summary.status

    async def _worker(self, index: int):
        while self.running:
            try:
                job = await asyncio.to_thread(self.queue.claim)
            except Exception as e:
                logger.error(f"Worker {index}: claim failed: {e}")
                job = None
            if job is None:
                await asyncio.sleep(self.poll_interval)
                continue
            await self.run_job(job)

    async def _heartbeat(self):
        last_recovery = time.monotonic()
        while self.running:
            await asyncio.sleep(self.poll_interval)
            try:
                if self._in_flight:
                    stopped = await asyncio.to_thread(self.queue.heartbeat, sorted(self._in_flight))
                    for run_id in stopped:
                        self.coordinator.stop(run_id)
                if time.monotonic() - last_recovery >= self.stale_after / 3:
                    last_recovery = time.monotonic()
                    await asyncio.to_thread(self.queue.recover_stale, self.stale_after)
            except Exception as e:
                logger.error(f"Worker pool heartbeat failed: {e}")

    def start(self) -> list[asyncio.Task]:
        """Spawn the workers on the running event loop."""
        if self.running:
            return self._workers
        self.running = True
        recovered = self.queue.recover_stale(self.stale_after)
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.size)]
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info(f"Started {self.size} worker(s); {recovered} stale run(s) requeued")
        return self._workers

    async def stop(self):
        """Stop polling and wait for in-flight jobs to finish."""
        self.running = False
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None

    async def drain(self) -> int:
        """Run queued jobs in batches of ``size`` until the queue is empty.

        Returns the number of jobs run.
        """
        processed = 0
        while True:
            batch: list[QueuedRun] = []
            for _ in range(self.size):
                job = await asyncio.to_thread(self.queue.claim)
                if job is None:
                    break
                batch.append(job)
            if not batch:
                return processed
            await asyncio.gather(*[self.run_job(job) for job in batch])
            processed += len(batch)
