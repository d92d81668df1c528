"""Process-level wiring of the engine components.

``build_engine`` constructs one of everything and links them explicitly;
the result is handed to the HTTP app, the CLI and tests. Nothing here is a
module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from nodeflow.config import EngineConfig
from nodeflow.core.coordinator import RunCoordinator
from nodeflow.core.credentials import CredentialResolver, EnvCredentialResolver
from nodeflow.core.dispatch import RunQueue, WorkerPool
from nodeflow.core.executors import builtin_executors
from nodeflow.core.migration import MigrationRegistry, register_default_migrations
from nodeflow.core.monitor import ExecutionMonitor
from nodeflow.core.registry import NodeRegistry
from nodeflow.core.runner import NodeRunner
from nodeflow.core.state import Database, WorkflowStore
from nodeflow.core.triggers import TriggerScheduler

logger = logging.getLogger(__name__)

# Editor-era names that map onto built-in executors
DEFAULT_ALIASES = {
    "manual": "manual-trigger",
    "start": "manual-trigger",
    "cron": "schedule",
    "schedule-trigger": "schedule",
    "noop": "no-op",
    "wait": "delay",
}


@dataclass
class Engine:
    config: EngineConfig
    db: Database
    registry: NodeRegistry
    migrations: MigrationRegistry
    runner: NodeRunner
    monitor: ExecutionMonitor
    store: WorkflowStore
    coordinator: RunCoordinator
    queue: RunQueue
    pool: WorkerPool
    triggers: TriggerScheduler


def default_registry() -> NodeRegistry:
    registry = NodeRegistry()
    for executor in builtin_executors():
        registry.register_declarative(executor)
    for alias, type_key in DEFAULT_ALIASES.items():
        registry.register_alias(alias, type_key)
    return registry


def build_engine(
    config: EngineConfig | None = None,
    registry: NodeRegistry | None = None,
    credentials: CredentialResolver | None = None,
    db_path: str | Path | None = None,
) -> Engine:
    """Create a fully wired engine.

    Args:
        config: Engine settings; defaults when omitted.
        registry: Pre-populated registry. Defaults to the built-in executors.
        credentials: Credential resolver; defaults to environment variables.
        db_path: Overrides ``config.db_path``.
    """
    config = config or EngineConfig()
    db = Database(db_path or config.db_path)
    registry = registry or default_registry()
    migrations = register_default_migrations(MigrationRegistry())
    runner = NodeRunner(
        registry,
        migrations=migrations,
        credentials=credentials or EnvCredentialResolver(),
        default_timeout_ms=config.default_timeout_ms,
    )
    monitor = ExecutionMonitor(heartbeat_interval=config.heartbeat_interval)
    store = WorkflowStore(db, registry=registry)
    coordinator = RunCoordinator(runner, monitor=monitor, store=store)
    queue = RunQueue(db)
    pool = WorkerPool(queue, coordinator, store, size=config.worker_pool_size)
    triggers = TriggerScheduler(store, queue)
    logger.debug(f"Engine built with database {db.db_path}")
    return Engine(
        config=config,
        db=db,
        registry=registry,
        migrations=migrations,
        runner=runner,
        monitor=monitor,
        store=store,
        coordinator=coordinator,
        queue=queue,
        pool=pool,
        triggers=triggers,
    )
