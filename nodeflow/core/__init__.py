"""Core modules for the nodeflow execution engine."""

from nodeflow.core.context import NodeResult, RunContext, RunStatus, RunSummary
from nodeflow.core.coordinator import RunCoordinator, RunOptions
from nodeflow.core.graph_schema import EdgeSpec, NodeSpec, WorkflowDefinition
from nodeflow.core.registry import NodeRegistry
from nodeflow.core.runner import NodeRunner

__all__ = [
    "EdgeSpec",
    "NodeRegistry",
    "NodeResult",
    "NodeRunner",
    "NodeSpec",
    "RunContext",
    "RunCoordinator",
    "RunOptions",
    "RunStatus",
    "RunSummary",
    "WorkflowDefinition",
]
