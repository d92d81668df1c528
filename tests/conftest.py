# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the nodeflow test suite.

This module provides foundational fixtures used across all test modules:
- Test databases and stores
- A registry with the built-in executors plus test executors
- A workflow factory for compact graph definitions
- A fully wired engine

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    Async code is driven with asyncio.run() inside plain test functions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from nodeflow.config import EngineConfig
from nodeflow.core.context import RunContext
from nodeflow.core.engine import Engine, build_engine, default_registry
from nodeflow.core.errors import ExecutorError
from nodeflow.core.executors import BaseExecutor, ExecutorDefinition, NodeInvocation
from nodeflow.core.graph_schema import WorkflowDefinition
from nodeflow.core.registry import NodeRegistry
from nodeflow.core.state import Database, WorkflowStore


# =============================================================================
# Test Executors
# =============================================================================


class FailingExecutor(BaseExecutor):
    """Always raises ``config.message`` (default "boom")."""

    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(type_key="fail", display_name="Fail", category="test")

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        raise ExecutorError(node.config.get("message", "boom"))


class HangingExecutor(BaseExecutor):
    """Never returns."""

    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(type_key="hang", display_name="Hang", category="test")

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        await asyncio.Event().wait()


class RecordingExecutor(BaseExecutor):
    """Records (node id, input) and returns ``config.output`` or the input."""

    def __init__(self, calls: list[tuple[str, Any]]):
        self.calls = calls

    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(type_key="record", display_name="Record", category="test")

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        self.calls.append((node.id, node.input))
        await asyncio.sleep(0)
        return node.config.get("output", node.input)


# =============================================================================
# Registry and Workflow Fixtures
# =============================================================================


@pytest.fixture
def call_log() -> list[tuple[str, Any]]:
    """Shared list the ``record`` executor appends to."""
    return []


@pytest.fixture
def registry(call_log) -> NodeRegistry:
    """Built-in executors plus ``fail``, ``hang`` and ``record``."""
    reg = default_registry()
    reg.register_declarative(FailingExecutor())
    reg.register_declarative(HangingExecutor())
    reg.register_declarative(RecordingExecutor(call_log))
    return reg


@pytest.fixture
def workflow_factory() -> Callable[..., WorkflowDefinition]:
    """Build a WorkflowDefinition from compact node/edge descriptions.

    Example:
        wf = workflow_factory(
            {"a": "set", "b": ("fail", {"message": "x"})},
            [("a", "b")],
        )

    A node value is a type key, a ``(type, config)`` tuple, or a full
    node-data dict with a ``type`` key.
    """

    def build(
        nodes: dict[str, Any],
        edges: list[tuple[str, str]] | None = None,
        workflow_id: str = "wf-test",
        **settings: Any,
    ) -> WorkflowDefinition:
        node_list = []
        for node_id, spec in nodes.items():
            if isinstance(spec, str):
                node_list.append({"id": node_id, "type": spec})
            elif isinstance(spec, tuple):
                node_type, config = spec
                node_list.append({"id": node_id, "type": node_type, "data": {"config": config}})
            else:
                data = dict(spec)
                node_type = data.pop("type")
                node_list.append({"id": node_id, "type": node_type, "data": data})
        edge_list = [
            {"id": f"e{i}", "source": src, "target": dst}
            for i, (src, dst) in enumerate(edges or [])
        ]
        return WorkflowDefinition.model_validate(
            {
                "id": workflow_id,
                "name": workflow_id,
                "nodes": node_list,
                "edges": edge_list,
                "settings": settings,
            }
        )

    return build


# =============================================================================
# Database and Engine Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Creates a fresh SQLite database in a temporary directory.
    Database is automatically cleaned up after the test.
    """
    return Database(tmp_path / "state.db")


@pytest.fixture
def store(test_db: Database, registry: NodeRegistry) -> WorkflowStore:
    return WorkflowStore(test_db, registry=registry)


@pytest.fixture
def engine(tmp_path: Path, registry: NodeRegistry) -> Engine:
    """A fully wired engine on a temporary database with a short heartbeat."""
    config = EngineConfig(
        db_path=tmp_path / "engine.db",
        worker_pool_size=2,
        heartbeat_interval=0.05,
        trigger_poll_interval=0.05,
    )
    return build_engine(config, registry=registry)
