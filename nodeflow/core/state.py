"""SQLite state: workflow definitions, run history, run queue and triggers.

``Database`` owns the schema and connection handling; ``WorkflowStore`` is the
persistence collaborator used by the coordinator and the transport layer.
The ``run_queue`` and ``triggers`` tables are driven by
``nodeflow.core.dispatch`` and ``nodeflow.core.triggers``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from nodeflow.core.context import RunSummary
from nodeflow.core.errors import WorkflowNotFound, WorkflowValidationError
from nodeflow.core.graph_schema import WorkflowDefinition

if TYPE_CHECKING:
    from nodeflow.core.registry import NodeRegistry

logger = logging.getLogger(__name__)


class _SafeJSONEncoder(json.JSONEncoder):
    """Encoder for node outputs, which executors may return as models or datetimes."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj, key=str)
        return super().default(obj)


def safe_json_dumps(obj: Any) -> str:
    """``json.dumps`` that tolerates whatever an executor put in its output."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Database:
    """SQLite database for engine state."""

    SCHEMA = """
    -- Stored workflow definitions
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        version TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Terminal run summaries
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        summary JSON NOT NULL,
        error TEXT,
        started_at TIMESTAMP,
        completed_at TIMESTAMP
    );

    -- Durable background run queue
    CREATE TABLE IF NOT EXISTS run_queue (
        run_id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        initial_input JSON,
        priority INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'queued',
        error TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        enqueued_at TIMESTAMP DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
        claimed_at TIMESTAMP,
        -- Refreshed by the owning worker; stale rows are requeued
        heartbeat_at TIMESTAMP,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        finished_at TIMESTAMP
    );

    -- Time-based triggers and their last fire time
    CREATE TABLE IF NOT EXISTS triggers (
        workflow_id TEXT PRIMARY KEY,
        spec JSON NOT NULL,
        last_fired_at TIMESTAMP,
        enabled INTEGER NOT NULL DEFAULT 1,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_runs_workflow ON runs(workflow_id, started_at);
    CREATE INDEX IF NOT EXISTS idx_queue_claim ON run_queue(status, priority DESC, enqueued_at);
    """

    def __init__(self, db_path: str | Path = ".nodeflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Create tables on first use; WAL lets workers read while a run is recorded."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Open a connection that commits on success and rolls back on error.

        Workers, the scheduler and HTTP handlers share one file, so writers
        wait up to 30s for the lock.
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Explicit write transaction (``BEGIN IMMEDIATE``) for atomic claims."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn


class WorkflowStore:
    """Workflow definitions and run history on top of ``Database``."""

    def __init__(self, db: Database, registry: NodeRegistry | None = None):
        self.db = db
        self.registry = registry

    # ========== Workflows ==========

    def validate_workflow(self, definition: WorkflowDefinition) -> list[str]:
        errors = definition.validate_graph()
        if self.registry is not None:
            errors.extend(self.registry.find_ambiguous_type_keys(definition))
        return errors

    def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or update a workflow.

        Raises:
            WorkflowValidationError: Invalid graph or ambiguous node types.
        """
        errors = self.validate_workflow(definition)
        if errors:
            raise WorkflowValidationError(errors)
        with self.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, definition, version, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    definition = excluded.definition,
                    version = excluded.version,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (
                    definition.id,
                    definition.name,
                    definition.model_dump_json(by_alias=False),
                    definition.version,
                ),
            )
        logger.info(f"Saved workflow '{definition.id}'")
        return definition

    def load_workflow(self, workflow_id: str) -> WorkflowDefinition:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
        if not row:
            raise WorkflowNotFound(f"Workflow '{workflow_id}' not found")
        return WorkflowDefinition.model_validate_json(row["definition"])

    def list_workflows(self) -> list[WorkflowDefinition]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT definition FROM workflows ORDER BY updated_at DESC, id"
            ).fetchall()
        return [WorkflowDefinition.model_validate_json(row["definition"]) for row in rows]

    def delete_workflow(self, workflow_id: str) -> None:
        """Delete a workflow and its trigger.

        Raises:
            WorkflowNotFound: Unknown id.
        """
        with self.db._connect() as conn:
            cursor = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
            if cursor.rowcount == 0:
                raise WorkflowNotFound(f"Workflow '{workflow_id}' not found")
            conn.execute("DELETE FROM triggers WHERE workflow_id = ?", (workflow_id,))
        logger.info(f"Deleted workflow '{workflow_id}'")

    # ========== Runs ==========

    def record_run(self, summary: RunSummary) -> None:
        with self.db._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs (id, workflow_id, status, summary, error, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    summary = excluded.summary,
                    error = excluded.error,
                    completed_at = excluded.completed_at
                """,
                (
                    summary.run_id,
                    summary.workflow_id,
                    summary.status.value,
                    safe_json_dumps(summary),
                    summary.error,
                    summary.started_at.isoformat(),
                    summary.completed_at.isoformat() if summary.completed_at else None,
                ),
            )

    def get_run(self, run_id: str) -> RunSummary | None:
        with self.db._connect() as conn:
            row = conn.execute("SELECT summary FROM runs WHERE id = ?", (run_id,)).fetchone()
        return RunSummary.model_validate_json(row["summary"]) if row else None

    def list_runs(self, workflow_id: str | None = None, limit: int = 50) -> list[RunSummary]:
        query = "SELECT summary FROM runs"
        params: list[Any] = []
        if workflow_id is not None:
            query += " WHERE workflow_id = ?"
            params.append(workflow_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self.db._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [RunSummary.model_validate_json(row["summary"]) for row in rows]
