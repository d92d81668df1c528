"""Time-based triggers that feed the run queue.

A workflow is scheduled either by ``settings.schedule`` or by a schedule
trigger node (``type``/``subtype`` ``schedule``) whose config carries a
``cron`` expression or ``triggerInterval`` + ``triggerIntervalUnit``.

Each trigger's last fire time is persisted in the ``triggers`` table. On each
``tick`` a trigger fires at most once, for the most recent window that has
passed since its last fire. After downtime that means one catch-up run, not
one per missed window.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from croniter import croniter

from nodeflow.core.dispatch import RunQueue
from nodeflow.core.errors import NodeflowError
from nodeflow.core.graph_schema import ScheduleSpec, WorkflowDefinition
from nodeflow.core.state import WorkflowStore

logger = logging.getLogger(__name__)

SCHEDULE_NODE_TYPES = ("schedule", "schedule-trigger", "cron")
UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class TriggerError(NodeflowError):
    """Invalid schedule definition."""

    pass


@dataclass
class Trigger:
    workflow_id: str
    spec: ScheduleSpec
    last_fired_at: datetime | None = None
    enabled: bool = True


def interval_to_seconds(value: float, unit: str = "minutes") -> int:
    try:
        factor = UNIT_SECONDS[unit]
    except KeyError:
        raise TriggerError(f"Unknown interval unit: {unit!r}") from None
    seconds = int(float(value) * factor)
    if seconds <= 0:
        raise TriggerError(f"Interval must be positive, got {value} {unit}")
    return seconds


def schedule_from_definition(definition: WorkflowDefinition) -> ScheduleSpec | None:
    """Find the schedule for a workflow: settings first, then a trigger node."""
    if definition.settings.schedule is not None:
        return definition.settings.schedule
    for node in definition.nodes:
        if node.type not in SCHEDULE_NODE_TYPES and node.subtype not in SCHEDULE_NODE_TYPES:
            continue
        config = node.data.config
        timezone = config.get("timezone", "UTC")
        if config.get("cron"):
            return ScheduleSpec(cron=config["cron"], timezone=timezone)
        if config.get("triggerInterval"):
            seconds = interval_to_seconds(
                config["triggerInterval"], config.get("triggerIntervalUnit", "minutes")
            )
            return ScheduleSpec(interval_seconds=seconds, timezone=timezone)
    return None


def latest_due(spec: ScheduleSpec, last_fired_at: datetime, now: datetime) -> datetime | None:
    """Most recent scheduled time in ``(last_fired_at, now]``, or None."""
    if spec.interval_seconds:
        elapsed = (now - last_fired_at).total_seconds()
        windows = int(elapsed // spec.interval_seconds)
        if windows < 1:
            return None
        return last_fired_at + timedelta(seconds=windows * spec.interval_seconds)

    local_now = now.astimezone(ZoneInfo(spec.timezone))
    # croniter's get_prev excludes the start time, so nudge past it
    previous = croniter(spec.cron, local_now + timedelta(microseconds=1)).get_prev(datetime)
    previous = previous.astimezone(UTC)
    if previous > last_fired_at:
        return previous
    return None


def _utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TriggerScheduler:
    """Fire scheduled workflows into a ``RunQueue``."""

    def __init__(self, store: WorkflowStore, queue: RunQueue, priority: int = 0):
        self.store = store
        self.queue = queue
        self.priority = priority
        self.running = False

    # ========== Trigger table ==========

    def _load(self) -> list[Trigger]:
        with self.store.db._connect() as conn:
            rows = conn.execute(
                "SELECT workflow_id, spec, last_fired_at, enabled FROM triggers ORDER BY workflow_id"
            ).fetchall()
        return [
            Trigger(
                workflow_id=row["workflow_id"],
                spec=ScheduleSpec.model_validate(json.loads(row["spec"])),
                last_fired_at=_utc(datetime.fromisoformat(row["last_fired_at"]))
                if row["last_fired_at"]
                else None,
                enabled=bool(row["enabled"]),
            )
            for row in rows
        ]

    def list_triggers(self) -> list[Trigger]:
        return self._load()

    def get(self, workflow_id: str) -> Trigger | None:
        return next((t for t in self._load() if t.workflow_id == workflow_id), None)

    def add(self, workflow_id: str, spec: ScheduleSpec, now: datetime | None = None) -> Trigger:
        """Register or update a trigger.

        A new trigger starts counting from ``now``; updating an existing one
        keeps its last fire time.

        Raises:
            TriggerError: Invalid cron expression or timezone.
        """
        if spec.cron and not croniter.is_valid(spec.cron):
            raise TriggerError(f"Invalid cron expression: {spec.cron!r}")
        try:
            ZoneInfo(spec.timezone)
        except (KeyError, ValueError) as e:
            raise TriggerError(f"Unknown timezone: {spec.timezone!r}") from e

        baseline = _utc(now).isoformat()
        with self.store.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO triggers (workflow_id, spec, last_fired_at, enabled, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(workflow_id) DO UPDATE SET
                    spec = excluded.spec,
                    enabled = excluded.enabled,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (workflow_id, spec.model_dump_json(), baseline, int(spec.enabled)),
            )
        logger.info(f"Trigger set for workflow '{workflow_id}': {spec.cron or f'every {spec.interval_seconds}s'}")
        return self.get(workflow_id)

    def remove(self, workflow_id: str) -> bool:
        with self.store.db._connect() as conn:
            cursor = conn.execute("DELETE FROM triggers WHERE workflow_id = ?", (workflow_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info(f"Trigger removed for workflow '{workflow_id}'")
        return removed

    def sync_from_store(self, now: datetime | None = None) -> int:
        """Reconcile the trigger table with the stored workflows.

        Returns the number of enabled triggers afterwards.
        """
        known: set[str] = set()
        enabled = 0
        for definition in self.store.list_workflows():
            try:
                spec = schedule_from_definition(definition)
            except (TriggerError, ValueError) as e:
                logger.warning(f"Workflow '{definition.id}' has an invalid schedule: {e}")
                spec = None
            if spec is None:
                continue
            try:
                self.add(definition.id, spec, now=now)
            except TriggerError as e:
                logger.warning(f"Skipping trigger for workflow '{definition.id}': {e}")
                continue
            known.add(definition.id)
            enabled += int(spec.enabled)

        for trigger in self._load():
            if trigger.workflow_id not in known:
                self.remove(trigger.workflow_id)
        return enabled

    # ========== Firing ==========

    def tick(self, now: datetime | None = None) -> list[str]:
        """Enqueue runs for every trigger with a passed window. Returns run ids."""
        now = _utc(now)
        fired = []
        for trigger in self._load():
            if not trigger.enabled or not trigger.spec.enabled:
                continue
            last = trigger.last_fired_at or now
            due = latest_due(trigger.spec, last, now)
            if due is None:
                continue
            run_id = self.queue.submit(
                trigger.workflow_id,
                {
                    "trigger": {
                        "type": "schedule",
                        "scheduledAt": due.isoformat(),
                        "firedAt": now.isoformat(),
                    }
                },
                priority=self.priority,
            )
            with self.store.db._connect() as conn:
                conn.execute(
                    "UPDATE triggers SET last_fired_at = ? WHERE workflow_id = ?",
                    (due.isoformat(), trigger.workflow_id),
                )
            logger.info(f"Trigger fired for workflow '{trigger.workflow_id}' (window {due.isoformat()})")
            fired.append(run_id)
        return fired

    async def run_forever(self, poll_interval: float = 1.0):
        """Tick until ``stop()`` is called."""
        self.running = True
        await asyncio.to_thread(self.sync_from_store)
        while self.running:
            try:
                await asyncio.to_thread(self.tick)
            except Exception as e:
                logger.error(f"Trigger tick failed: {e}")
            await asyncio.sleep(poll_interval)

    def stop(self):
        self.running = False
