"""Per-run state: context, node results and run summaries."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from nodeflow.core.errors import CancellationError


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class RunStatus(str, Enum):
    """Lifecycle of a single workflow run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


ErrorKind = Literal["timeout", "type_not_found", "executor", "skipped"]


class NodeResult(BaseModel):
    """Outcome of one node execution. Written exactly once per node per run."""

    success: bool
    output: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        error: str,
        error_kind: ErrorKind,
        duration_ms: int = 0,
        **metadata: Any,
    ) -> "NodeResult":
        return cls(
            success=False,
            error=error,
            error_kind=error_kind,
            duration_ms=duration_ms,
            metadata=metadata,
        )


class RunSummary(BaseModel):
    """Terminal report for a run, as returned to callers and persisted."""

    run_id: str
    workflow_id: str
    status: RunStatus
    node_results: dict[str, NodeResult] = Field(default_factory=dict)
    execution_order: list[str] = Field(default_factory=list)
    # Nodes not run because an upstream dependency failed; absent from node_results
    skipped_nodes: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def duration_ms(self) -> int:
        if self.completed_at is None:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class RunContext:
    """Mutable state shared by the nodes of one run.

    ``node_outputs`` is append-only: each node id is recorded once.
    Cancellation is cooperative; the coordinator checks ``cancelled``
    before every dispatch. The flag is a ``threading.Event`` so ``cancel()``
    is safe to call from request threads.
    """

    def __init__(
        self,
        run_id: str,
        workflow_id: str,
        global_input: dict[str, Any] | None = None,
        initiator: str | None = None,
    ):
        self.run_id = run_id
        self.workflow_id = workflow_id
        self.global_input: dict[str, Any] = dict(global_input or {})
        self.initiator = initiator
        self.started_at = utc_now()
        self._node_outputs: dict[str, Any] = {}
        self._credentials: dict[str, dict[str, Any]] = {}
        self._cancelled = threading.Event()

    @property
    def node_outputs(self) -> dict[str, Any]:
        """Read-only snapshot of recorded outputs."""
        return dict(self._node_outputs)

    def record(self, node_id: str, output: Any) -> None:
        if node_id in self._node_outputs:
            raise ValueError(f"Output for node '{node_id}' already recorded in run {self.run_id}")
        self._node_outputs[node_id] = output

    def output_of(self, node_id: str, default: Any = None) -> Any:
        return self._node_outputs.get(node_id, default)

    def set_credentials(self, node_id: str, credentials: dict[str, Any]) -> None:
        self._credentials[node_id] = dict(credentials)

    def credentials_for(self, node_id: str) -> dict[str, Any]:
        return dict(self._credentials.get(node_id, {}))

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self) -> None:
        """For long-running executors: stop early once the run is cancelled.

        Raises:
            CancellationError: ``stop()`` was requested for this run.
        """
        if self.cancelled:
            raise CancellationError(f"Run {self.run_id} was cancelled")
