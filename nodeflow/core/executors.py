"""Executor contract and the built-in core executors.

Two generations of executor coexist:

- Declarative executors subclass ``BaseExecutor``: they describe themselves
  through ``get_definition()`` and implement ``async execute()``.
- Legacy executors are plain callables ``fn(node, run_context)``, sync or
  async, registered with their metadata supplied at registration time.

Both receive a ``NodeInvocation``, a narrow view of the node with its
resolved input, normalized config and credentials.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from nodeflow.core.context import RunContext


class ExecutorDefinition(BaseModel):
    """Self-description published by a declarative executor."""

    type_key: str
    display_name: str
    category: str = "core"
    version: int | list[int] = 1
    description: str = ""
    config_schema: dict[str, Any] | None = None

    @property
    def target_version(self) -> int:
        if isinstance(self.version, list):
            return max(self.version) if self.version else 1
        return self.version


@dataclass
class NodeInvocation:
    """What an executor sees of the node it is running."""

    id: str
    type_key: str
    config: dict[str, Any]
    input: Any
    credentials: dict[str, Any] = field(default_factory=dict)
    version: int = 1


class BaseExecutor(ABC):
    """Base class for declarative executors.

    ``execute`` may return any value, which the runner wraps as a successful
    output, or an envelope dict with a ``success`` key (plus ``output`` /
    ``error`` / ``duration_ms``) that is passed through. Raising marks the
    node failed.
    """

    @abstractmethod
    def get_definition(self) -> ExecutorDefinition:
        pass

    @abstractmethod
    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        pass


def _input_as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if value is None:
        return {}
    return {"input": value}


class ManualTriggerExecutor(BaseExecutor):
    """Entry point for manually started runs; passes its input through."""

    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(
            type_key="manual-trigger",
            display_name="Manual Trigger",
            category="trigger",
            description="Starts the workflow with the run's initial input",
        )

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        return node.input


class SetExecutor(BaseExecutor):
    """Emit fixed values, optionally merged over the incoming data."""

    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(
            type_key="set",
            display_name="Set",
            category="transform",
            description="Outputs config.values, merged over the input when include_input is true",
            config_schema={
                "type": "object",
                "properties": {
                    "values": {"type": "object"},
                    "include_input": {"type": "boolean"},
                },
            },
        )

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        values = dict(node.config.get("values") or {})
        if node.config.get("include_input"):
            merged = _input_as_dict(node.input)
            merged.update(values)
            return merged
        return values


class NoOpExecutor(BaseExecutor):
    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(
            type_key="no-op",
            display_name="No Operation",
            category="flow",
            description="Passes its input through unchanged",
        )

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        return node.input


class DelayExecutor(BaseExecutor):
    """Wait ``config.seconds`` then pass the input through."""

    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(
            type_key="delay",
            display_name="Delay",
            category="flow",
            description="Waits for config.seconds before continuing",
            config_schema={
                "type": "object",
                "properties": {"seconds": {"type": "number", "minimum": 0}},
                "required": ["seconds"],
            },
        )

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        await asyncio.sleep(float(node.config.get("seconds", 0)))
        return node.input


class ScheduleTriggerExecutor(BaseExecutor):
    """Entry point for scheduled runs; the trigger scheduler supplies the input."""

    def get_definition(self) -> ExecutorDefinition:
        return ExecutorDefinition(
            type_key="schedule",
            display_name="Schedule Trigger",
            category="trigger",
            description="Starts the workflow on a cron expression or fixed interval",
            config_schema={
                "type": "object",
                "properties": {
                    "cron": {"type": "string"},
                    "triggerInterval": {"type": "number", "exclusiveMinimum": 0},
                    "triggerIntervalUnit": {
                        "enum": ["seconds", "minutes", "hours", "days"],
                    },
                },
            },
        )

    async def execute(self, node: NodeInvocation, run_context: RunContext) -> Any:
        return node.input


BUILTIN_EXECUTORS: list[type[BaseExecutor]] = [
    ManualTriggerExecutor,
    ScheduleTriggerExecutor,
    SetExecutor,
    NoOpExecutor,
    DelayExecutor,
]


def builtin_executors() -> list[BaseExecutor]:
    return [cls() for cls in BUILTIN_EXECUTORS]


class NodeInfo(BaseModel):
    """Serializable registry listing entry (used by the HTTP and CLI layers)."""

    type_key: str
    kind: str
    display_name: str
    category: str
    version: int | list[int]
    description: str = ""
    config_schema: dict[str, Any] | None = Field(default=None)
