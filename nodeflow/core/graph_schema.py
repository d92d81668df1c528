"""Workflow definition schema using Pydantic models.

Workflows are directed graphs of typed nodes. A node's ``type`` (and optional
``data.subtype``) is a type key resolved against the node registry at run time;
its ``data.config`` is an opaque map handed to the executor.

The same models accept both the snake_case field names used in Python and the
camelCase names produced by the editor (``continueOnFail``, ``timeoutMs``...).
"""

from __future__ import annotations

from typing import Any

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_TIMEOUT_MS = 30_000


class RetryPolicy(BaseModel):
    """Retry behaviour for failed node executions."""

    model_config = ConfigDict(populate_by_name=True)

    max_retries: int = Field(default=0, ge=0, alias="maxRetries")
    backoff_ms: int = Field(default=1000, ge=0, alias="backoffMs")
    max_backoff_ms: int = Field(default=30_000, ge=0, alias="maxBackoffMs")
    # Substring patterns; empty means the built-in transient-error patterns
    retryable_errors: list[str] = Field(default_factory=list, alias="retryableErrors")

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds before retry number ``attempt`` (1-based)."""
        delay_ms = min(self.backoff_ms * (2 ** (attempt - 1)), self.max_backoff_ms)
        return delay_ms / 1000.0


class ScheduleSpec(BaseModel):
    """Time-based trigger attached to a workflow."""

    model_config = ConfigDict(populate_by_name=True)

    cron: str | None = None
    interval_seconds: int | None = Field(default=None, gt=0, alias="intervalSeconds")
    timezone: str = "UTC"
    enabled: bool = True

    @model_validator(mode="after")
    def check_one_of(self) -> "ScheduleSpec":
        if bool(self.cron) == bool(self.interval_seconds):
            raise ValueError("Schedule requires exactly one of 'cron' or 'interval_seconds'")
        return self


class WorkflowSettings(BaseModel):
    """Per-workflow execution settings."""

    model_config = ConfigDict(populate_by_name=True)

    max_concurrency: int = Field(default=4, ge=1, alias="maxConcurrency")
    # None defers to the engine-wide default
    default_timeout_ms: int | None = Field(default=None, gt=0, alias="defaultTimeoutMs")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    schedule: ScheduleSpec | None = None


class NodeOptions(BaseModel):
    """Execution options for a single node."""

    model_config = ConfigDict(populate_by_name=True)

    continue_on_fail: bool = Field(default=False, alias="continueOnFail")
    run_fatal: bool = Field(default=False, alias="runFatal")
    timeout_ms: int | None = Field(default=None, gt=0, alias="timeoutMs")
    manual_input: dict[str, Any] | None = Field(default=None, alias="manualInput")
    retry: RetryPolicy | None = None


class NodeData(BaseModel):
    """Editor-authored node payload."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    subtype: str | None = None
    label: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    options: NodeOptions = Field(default_factory=NodeOptions)
    credentials_type: str | None = Field(default=None, alias="credentialsType")
    version: int | None = None


class NodeSpec(BaseModel):
    """A unit of work in the graph, bound to an executor by type key."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str
    data: NodeData = Field(default_factory=NodeData)
    version: int | None = None

    @field_validator("id", "type")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return v

    @property
    def subtype(self) -> str | None:
        return self.data.subtype

    @property
    def options(self) -> NodeOptions:
        return self.data.options

    @property
    def declared_version(self) -> int:
        """Schema version the stored configuration was authored against."""
        for candidate in (self.version, self.data.version, self.data.config.get("version")):
            if isinstance(candidate, int) and not isinstance(candidate, bool):
                return candidate
        return 1


class EdgeSpec(BaseModel):
    """Directed edge: ``target`` consumes ``source``'s output."""

    id: str
    source: str
    target: str


class WorkflowDefinition(BaseModel):
    """Complete workflow definition as stored by persistence."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str | None = None
    version: str = "1.0.0"

    nodes: list[NodeSpec]
    edges: list[EdgeSpec] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

    def get_node(self, node_id: str) -> NodeSpec | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        if not self.nodes:
            errors.append("Workflow must have at least one node")

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
            if edge.source == edge.target:
                errors.append(f"Edge {edge.id}: self-loop on '{edge.source}'")

        G = self._to_networkx()
        try:
            cycle = nx.find_cycle(G)
            cycle_path = " -> ".join(str(e[0]) for e in cycle)
            errors.append(f"Cycle detected: {cycle_path} -> {cycle[0][0]}")
        except nx.NetworkXNoCycle:
            pass

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G
