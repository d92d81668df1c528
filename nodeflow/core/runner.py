"""Node runner: resolve, prepare and invoke a single node.

``NodeRunner.execute`` never raises for node-level problems. Unknown types,
timeouts and executor exceptions all come back as a failed ``NodeResult``
so the coordinator can apply its failure policy.
"""

from __future__ import annotations

import asyncio
import contextvars
import copy
import inspect
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from nodeflow.core.context import NodeResult, RunContext
from nodeflow.core.errors import MigrationError, NodeTimeoutError, NodeTypeNotFound
from nodeflow.core.executors import NodeInvocation
from nodeflow.core.graph_schema import DEFAULT_TIMEOUT_MS, NodeSpec, RetryPolicy, WorkflowSettings
from nodeflow.core.migration import MigrationRegistry
from nodeflow.core.registry import ExecutorEntry, NodeRegistry

logger = logging.getLogger(__name__)

# Substrings that mark a failure as transient when a policy lists none
DEFAULT_RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "econnreset",
    "etimedout",
    "econnrefused",
    "rate limit",
    "429",
    "502",
    "503",
    "504",
)
NON_RETRYABLE_PATTERNS = ("cancelled", "validation", "invalid")

ConfigNormalizer = Callable[[dict[str, Any]], dict[str, Any]]


def flatten_sections(
    *sections: str, defaults: dict[str, Any] | None = None
) -> ConfigNormalizer:
    """Build a normalizer that lifts keys out of nested UI sections.

    Top-level keys win; otherwise the first section (in the given order)
    that has the key supplies it. The nested sections are dropped.
    """

    def normalize(config: dict[str, Any]) -> dict[str, Any]:
        flat = {k: v for k, v in config.items() if k not in sections}
        for section in sections:
            nested = config.get(section)
            if not isinstance(nested, dict):
                continue
            for key, value in nested.items():
                if flat.get(key) is None:
                    flat[key] = value
        for key, value in (defaults or {}).items():
            if flat.get(key) is None:
                flat[key] = value
        return flat

    return normalize


DEFAULT_NORMALIZERS: dict[str, ConfigNormalizer] = {
    "google-drive": flatten_sections("fileOperations", "options", defaults={"operation": "list"}),
}


def is_retryable(error: str | None, policy: RetryPolicy) -> bool:
    if not error:
        return False
    message = error.lower()
    if any(p in message for p in NON_RETRYABLE_PATTERNS):
        return False
    patterns = [p.lower() for p in policy.retryable_errors] or list(DEFAULT_RETRYABLE_PATTERNS)
    return any(p in message for p in patterns)


def _consume_abandoned(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned executor task finished with error: {exc}")


class NodeRunner:
    """Runs one node against the registry."""

    def __init__(
        self,
        registry: NodeRegistry,
        migrations: MigrationRegistry | None = None,
        credentials=None,
        normalizers: dict[str, ConfigNormalizer] | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ):
        self.registry = registry
        self.migrations = migrations or MigrationRegistry()
        self.credentials = credentials
        self.normalizers = dict(DEFAULT_NORMALIZERS if normalizers is None else normalizers)
        self.default_timeout_ms = default_timeout_ms

    # ========== Preparation ==========

    def normalize_config(self, type_key: str, config: dict[str, Any]) -> dict[str, Any]:
        config = copy.deepcopy(config)
        normalizer = self.normalizers.get(type_key)
        return normalizer(config) if normalizer else config

    def migrate_config(
        self, node: NodeSpec, entry: ExecutorEntry, config: dict[str, Any]
    ) -> tuple[dict[str, Any], int]:
        """Upgrade a declarative node's config to the executor's target version.

        Returns the config to use and the version it conforms to.
        """
        stored = node.declared_version
        if entry.kind != "declarative":
            return config, stored
        target = entry.target_version
        if target == stored:
            return config, stored
        try:
            return self.migrations.migrate(entry.type_key, stored, target, config)
        except MigrationError as e:
            logger.error(f"Node {node.id}: {e}; using original config")
            return config, stored

    def timeout_for(self, node: NodeSpec, settings: WorkflowSettings | None) -> int:
        if node.options.timeout_ms:
            return node.options.timeout_ms
        if settings is not None and settings.default_timeout_ms:
            return settings.default_timeout_ms
        return self.default_timeout_ms

    @staticmethod
    def retry_policy_for(node: NodeSpec, settings: WorkflowSettings | None) -> RetryPolicy:
        if node.options.retry is not None:
            return node.options.retry
        if settings is not None:
            return settings.retry
        return RetryPolicy()

    # ========== Execution ==========

    async def execute(
        self,
        node: NodeSpec,
        run_context: RunContext,
        node_input: Any,
        settings: WorkflowSettings | None = None,
    ) -> NodeResult:
        """Run a node and return its result. Node-level errors never propagate."""
        started = time.monotonic()
        base_meta: dict[str, Any] = {"node_type": node.type, "subtype": node.subtype}

        try:
            entry, matched_key = self.registry.resolve_node(node)
        except NodeTypeNotFound as e:
            logger.error(f"Run {run_context.run_id} node {node.id}: {e}")
            return NodeResult.failure(
                str(e), "type_not_found", _elapsed_ms(started), attempts=0, **base_meta
            )

        logger.debug(
            f"Run {run_context.run_id} node {node.id}: using {entry.kind} executor '{entry.type_key}'"
        )
        config = self.normalize_config(entry.type_key, node.data.config)
        config, version = self.migrate_config(node, entry, config)
        base_meta.update(version=version, executor_kind=entry.kind, resolved_type=matched_key)

        credentials: dict[str, Any] = {}
        if node.data.credentials_type and self.credentials is not None:
            try:
                credentials = self.credentials.get_credentials(node.data.credentials_type, node.id)
            except Exception as e:
                logger.error(f"Run {run_context.run_id} node {node.id}: credential lookup failed: {e}")
                return NodeResult.failure(
                    f"Credential lookup failed: {e}",
                    "executor",
                    _elapsed_ms(started),
                    attempts=0,
                    **base_meta,
                )
            run_context.set_credentials(node.id, credentials)

        invocation = NodeInvocation(
            id=node.id,
            type_key=entry.type_key,
            config=config,
            input=node_input,
            credentials=credentials,
            version=version,
        )
        timeout_ms = self.timeout_for(node, settings)
        policy = self.retry_policy_for(node, settings)

        attempt = 0
        while True:
            attempt += 1
            result = await self._invoke_once(entry, invocation, run_context, timeout_ms)
            if result.success or attempt > policy.max_retries:
                break
            if run_context.cancelled or not is_retryable(result.error, policy):
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Run {run_context.run_id} node {node.id}: attempt {attempt} failed "
                f"({result.error}); retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

        result.metadata = {**base_meta, **result.metadata, "attempts": attempt}
        if not result.success:
            logger.error(f"Run {run_context.run_id} node {node.id} failed: {result.error}")
        return result

    async def _invoke_once(
        self,
        entry: ExecutorEntry,
        invocation: NodeInvocation,
        run_context: RunContext,
        timeout_ms: int,
    ) -> NodeResult:
        started = time.monotonic()
        task = asyncio.ensure_future(self._call(entry, invocation, run_context))
        try:
            raw = await asyncio.wait_for(asyncio.shield(task), timeout=timeout_ms / 1000.0)
        except TimeoutError as e:
            if task.done():
                # Raised by the executor itself, not by the time budget
                return NodeResult.failure(str(e) or "TimeoutError", "executor", _elapsed_ms(started))
            # The executor keeps running; we only stop waiting for it
            task.add_done_callback(_consume_abandoned)
            logger.warning(
                f"ABANDONED EXECUTOR: node '{invocation.id}' timed out after {timeout_ms}ms. "
                "The executor may still be running in the background."
            )
            return NodeResult.failure(
                str(NodeTimeoutError(invocation.id, timeout_ms)), "timeout", _elapsed_ms(started)
            )
        except Exception as e:
            return NodeResult.failure(str(e) or type(e).__name__, "executor", _elapsed_ms(started))
        return self._normalize_result(raw, _elapsed_ms(started))

    @staticmethod
    async def _call(entry: ExecutorEntry, invocation: NodeInvocation, run_context: RunContext) -> Any:
        if entry.kind == "declarative":
            return await entry.impl.execute(invocation, run_context)
        impl = entry.impl
        if inspect.iscoroutinefunction(impl):
            return await impl(invocation, run_context)
        result = await _run_in_daemon_thread(impl, invocation, run_context)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _normalize_result(raw: Any, duration_ms: int) -> NodeResult:
        if isinstance(raw, NodeResult):
            if not raw.duration_ms:
                raw.duration_ms = duration_ms
            return raw
        if isinstance(raw, dict) and "success" in raw:
            success = bool(raw["success"])
            error = raw.get("error")
            return NodeResult(
                success=success,
                output=raw.get("output"),
                error=None if error is None else str(error),
                error_kind=None if success else "executor",
                duration_ms=raw.get("duration_ms") or raw.get("durationMs") or duration_ms,
                metadata=dict(raw.get("metadata") or {}),
            )
        return NodeResult(success=True, output=raw, duration_ms=duration_ms)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _run_in_daemon_thread(func: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking legacy executor on its own daemon thread.

    ``asyncio.to_thread`` would use the loop's default executor, which
    ``asyncio.run`` joins on shutdown; a call abandoned after a timeout
    would then hold the process open until it returned.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()
    context = contextvars.copy_context()

    def settle(result: Any = None, error: Exception | None = None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def target() -> None:
        try:
            result = context.run(func, *args)
        except Exception as e:
            outcome = (None, e)
        else:
            outcome = (result, None)
        try:
            loop.call_soon_threadsafe(settle, *outcome)
        except RuntimeError:
            # Loop already closed; the call was abandoned
            logger.debug(f"Legacy executor {func!r} finished after shutdown")

    threading.Thread(target=target, name="nodeflow-legacy-executor", daemon=True).start()
    return await future
