"""Run coordinator: drives one workflow run from start to terminal state.

A run moves Pending -> Running -> {Completed, Failed, Cancelled}.

Dispatch is event-driven: whenever a node reaches a terminal state the
coordinator re-scans the plan for nodes whose predecessors are all terminal
and starts them, up to the run's concurrency limit. Ready nodes are started
in plan order, so ``execution_order`` (the plan) is stable across runs even
though independent branches may finish in any order.

Failure policy:
- A node whose ``continue_on_fail`` is False is skipped when any direct
  predecessor failed or was itself skipped. Skipped nodes have no entry in
  ``node_results``.
- A failed ``run_fatal`` node fails the run; nothing new is dispatched and
  in-flight nodes are allowed to finish.
- ``stop(run_id)`` is cooperative: in-flight nodes finish, nothing new is
  dispatched, and the run ends Cancelled.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nodeflow.core.context import NodeResult, RunContext, RunStatus, RunSummary, utc_now
from nodeflow.core.errors import DuplicateRunError
from nodeflow.core.graph_schema import NodeSpec, WorkflowDefinition
from nodeflow.core.monitor import EventType, ExecutionMonitor
from nodeflow.core.planner import ExecutionGraph, build_execution_graph, plan
from nodeflow.core.runner import NodeRunner

if TYPE_CHECKING:
    from nodeflow.core.state import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class RunOptions:
    """Per-run overrides supplied by the caller."""

    run_id: str | None = None
    initiator: str | None = None
    # Lowers (never raises) the workflow's max_concurrency
    max_concurrency: int | None = None
    # Explicit input per node id; replaces the assembled input entirely
    node_inputs: dict[str, Any] = field(default_factory=dict)


class RunCoordinator:
    """Execute workflow definitions and track the runs in flight."""

    def __init__(
        self,
        runner: NodeRunner,
        monitor: ExecutionMonitor | None = None,
        store: WorkflowStore | None = None,
    ):
        self.runner = runner
        self.monitor = monitor
        self.store = store
        self._active: dict[str, RunContext] = {}
        # Claimed runs not started yet; True once a stop was requested
        self._reserved: dict[str, bool] = {}

    # ========== Run control ==========

    def stop(self, run_id: str) -> bool:
        """Request cancellation. Returns False if the run is neither active nor reserved."""
        context = self._active.get(run_id)
        if context is None:
            if run_id not in self._reserved:
                return False
            self._reserved[run_id] = True
            logger.info(f"Run {run_id}: stop requested before start")
            return True
        if not context.cancelled:
            context.cancel()
            logger.info(f"Run {run_id}: stop requested")
        return True

    def reserve(self, run_id: str) -> None:
        """Accept stop requests for a run that is about to start.

        Workers reserve a job as soon as it is claimed, so a stop arriving
        while the workflow is still loading is not lost.
        """
        self._reserved.setdefault(run_id, False)

    def release(self, run_id: str) -> None:
        self._reserved.pop(run_id, None)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    def active_runs(self) -> list[str]:
        return list(self._active)

    # ========== Execution ==========

    async def execute_workflow(
        self,
        definition: WorkflowDefinition,
        initial_input: Any = None,
        options: RunOptions | None = None,
    ) -> RunSummary:
        """Run a workflow to completion and return its summary.

        Raises:
            GraphError: The graph is malformed. Raised before any node runs.
            DuplicateRunError: A run with the same id is already active.
        """
        options = options or RunOptions()
        definition = definition.model_copy(deep=True)
        graph = build_execution_graph(definition)
        order = plan(graph)

        run_id = options.run_id or str(uuid.uuid4())
        if run_id in self._active:
            raise DuplicateRunError(f"Run {run_id} is already active")

        if isinstance(initial_input, dict):
            global_input = initial_input
        elif initial_input is None:
            global_input = {}
        else:
            global_input = {"input": initial_input}
        context = RunContext(run_id, definition.id, global_input, initiator=options.initiator)
        self._active[run_id] = context
        if self._reserved.pop(run_id, False):
            context.cancel()

        limit = definition.settings.max_concurrency
        if options.max_concurrency:
            limit = max(1, min(limit, options.max_concurrency))

        logger.info(
            f"Run {run_id}: starting workflow '{definition.id}' "
            f"({len(order)} nodes, max_concurrency={limit})"
        )
        self._emit(
            run_id,
            EventType.WORKFLOW_START,
            {"workflowId": definition.id, "executionOrder": order, "nodeCount": len(order)},
        )

        try:
            results, skipped, fatal_error = await self._dispatch(
                definition, graph, order, context, initial_input, options, limit
            )
        finally:
            self._active.pop(run_id, None)

        if context.cancelled:
            status, error = RunStatus.CANCELLED, "Run cancelled"
        elif fatal_error:
            status, error = RunStatus.FAILED, fatal_error
        else:
            status, error = RunStatus.COMPLETED, None

        summary = RunSummary(
            run_id=run_id,
            workflow_id=definition.id,
            status=status,
            node_results=results,
            execution_order=order,
            skipped_nodes=[nid for nid in order if nid in skipped],
            started_at=context.started_at,
            completed_at=utc_now(),
            error=error,
        )
        logger.info(f"Run {run_id}: {status.value} in {summary.duration_ms}ms")

        terminal_event = {
            RunStatus.COMPLETED: EventType.WORKFLOW_COMPLETE,
            RunStatus.FAILED: EventType.WORKFLOW_ERROR,
            RunStatus.CANCELLED: EventType.WORKFLOW_CANCELLED,
        }[status]
        self._emit(
            run_id,
            terminal_event,
            {"status": status.value, "error": error, "durationMs": summary.duration_ms},
        )

        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.record_run, summary)
            except Exception as e:
                logger.error(f"Run {run_id}: failed to record run: {e}")

        self._emit(run_id, EventType.RUN_COMPLETE, {"summary": summary.model_dump(mode="json")})
        return summary

    async def _dispatch(
        self,
        definition: WorkflowDefinition,
        graph: ExecutionGraph,
        order: list[str],
        context: RunContext,
        initial_input: Any,
        options: RunOptions,
        limit: int,
    ) -> tuple[dict[str, NodeResult], set[str], str | None]:
        nodes = {n.id: n for n in definition.nodes}
        results: dict[str, NodeResult] = {}
        skipped: set[str] = set()
        started: set[str] = set()
        running: dict[asyncio.Task, str] = {}
        fatal_error: str | None = None

        def terminal(node_id: str) -> bool:
            return node_id in results or node_id in skipped

        try:
            while True:
                if not context.cancelled and fatal_error is None:
                    self._mark_skipped(graph, order, nodes, results, skipped, started, context)
                    for node_id in order:
                        if len(running) >= limit:
                            break
                        if node_id in started or node_id in skipped:
                            continue
                        if not all(terminal(p) for p in graph.predecessors[node_id]):
                            continue
                        node = nodes[node_id]
                        node_input = self.build_node_input(
                            node, graph, context, results, initial_input, options
                        )
                        started.add(node_id)
                        task = asyncio.create_task(
                            self._run_node(node, context, node_input, definition)
                        )
                        running[task] = node_id

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id = running.pop(task)
                    result = task.result()
                    results[node_id] = result
                    node = nodes[node_id]
                    if result.success:
                        context.record(node_id, result.output)
                        self._emit(
                            context.run_id,
                            EventType.NODE_SUCCESS,
                            {
                                "nodeId": node_id,
                                "output": result.output,
                                "durationMs": result.duration_ms,
                            },
                        )
                    else:
                        self._emit(
                            context.run_id,
                            EventType.NODE_ERROR,
                            {
                                "nodeId": node_id,
                                "error": result.error,
                                "errorKind": result.error_kind,
                                "durationMs": result.duration_ms,
                            },
                        )
                        if node.options.run_fatal and fatal_error is None:
                            fatal_error = f"Node '{node_id}' failed: {result.error}"
                            logger.error(f"Run {context.run_id}: {fatal_error}; halting dispatch")
        finally:
            # Only reached with tasks left if this coroutine was itself cancelled
            for task in running:
                task.cancel()

        return results, skipped, fatal_error

    @staticmethod
    def _mark_skipped(
        graph: ExecutionGraph,
        order: list[str],
        nodes: dict[str, NodeSpec],
        results: dict[str, NodeResult],
        skipped: set[str],
        started: set[str],
        context: RunContext,
    ) -> None:
        # Plan order guarantees predecessors are visited first, so one pass
        # propagates skips down a whole chain
        for node_id in order:
            if node_id in started or node_id in skipped:
                continue
            node = nodes[node_id]
            if node.options.continue_on_fail:
                continue
            failed = [
                p
                for p in graph.predecessors[node_id]
                if p in skipped or (p in results and not results[p].success)
            ]
            if failed:
                skipped.add(node_id)
                logger.info(
                    f"Run {context.run_id}: skipping node {node_id} "
                    f"(upstream {', '.join(failed)} did not succeed)"
                )

    def build_node_input(
        self,
        node: NodeSpec,
        graph: ExecutionGraph,
        context: RunContext,
        results: dict[str, NodeResult],
        initial_input: Any,
        options: RunOptions,
    ) -> Any:
        """Assemble a node's logical input.

        Root nodes receive the run's initial input. Other nodes receive, in
        increasing precedence: the global input, the output of a sole
        succeeded predecessor flattened into the root (when it is a dict),
        each succeeded predecessor's output under its node id, and finally
        ``options.manual_input``. ``RunOptions.node_inputs`` replaces all of
        this for the nodes it names.
        """
        if node.id in options.node_inputs:
            return copy.deepcopy(options.node_inputs[node.id])

        manual = node.options.manual_input
        predecessors = graph.predecessors[node.id]
        if not predecessors:
            value = copy.deepcopy(initial_input)
            if manual:
                value = {**(value if isinstance(value, dict) else context.global_input), **manual}
            return value

        merged: dict[str, Any] = dict(context.global_input)
        succeeded = [p for p in predecessors if p in results and results[p].success]
        if len(succeeded) == 1:
            only = context.output_of(succeeded[0])
            if isinstance(only, dict):
                merged.update(copy.deepcopy(only))
        for pred_id in succeeded:
            merged[pred_id] = copy.deepcopy(context.output_of(pred_id))
        if manual:
            merged.update(manual)
        return merged

    async def _run_node(
        self,
        node: NodeSpec,
        context: RunContext,
        node_input: Any,
        definition: WorkflowDefinition,
    ) -> NodeResult:
        self._emit(context.run_id, EventType.NODE_START, {"nodeId": node.id, "nodeType": node.type})
        try:
            return await self.runner.execute(node, context, node_input, definition.settings)
        except Exception as e:
            logger.exception(f"Run {context.run_id}: runner raised for node {node.id}")
            return NodeResult.failure(str(e), "executor", node_type=node.type)

    def _emit(self, run_id: str, event_type: EventType, data: dict[str, Any]) -> None:
        if self.monitor is None:
            return
        try:
            self.monitor.publish(run_id, event_type, data)
        except Exception as e:
            logger.warning(f"Run {run_id}: failed to publish {event_type.value}: {e}")
