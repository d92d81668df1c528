"""Execution planner: dependency-respecting dispatch order.

The planner derives an ExecutionGraph (adjacency + declaration index) from a
WorkflowDefinition and orders it with Kahn's algorithm. Ties among nodes that
become ready at the same time are broken by declaration order, so the same
definition always yields the same order.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

import networkx as nx

from nodeflow.core.errors import GraphError
from nodeflow.core.graph_schema import WorkflowDefinition

logger = logging.getLogger(__name__)


@dataclass
class ExecutionGraph:
    """Adjacency structure derived from a workflow definition.

    Invariant: every edge references an existing node id. Acyclicity is
    checked by ``plan()``.
    """

    node_ids: list[str]
    successors: dict[str, list[str]] = field(default_factory=dict)
    predecessors: dict[str, list[str]] = field(default_factory=dict)

    def __post_init__(self):
        self.index = {nid: i for i, nid in enumerate(self.node_ids)}

    def to_networkx(self) -> nx.DiGraph:
        G = nx.DiGraph()
        G.add_nodes_from(self.node_ids)
        for source, targets in self.successors.items():
            for target in targets:
                G.add_edge(source, target)
        return G


def build_execution_graph(definition: WorkflowDefinition) -> ExecutionGraph:
    """Validate node/edge references and build the adjacency structure.

    Raises:
        GraphError: On duplicate node ids or edges referencing unknown nodes.
    """
    node_ids: list[str] = []
    seen: set[str] = set()
    for node in definition.nodes:
        if node.id in seen:
            raise GraphError(f"Duplicate node ID: '{node.id}'")
        seen.add(node.id)
        node_ids.append(node.id)

    successors: dict[str, list[str]] = {nid: [] for nid in node_ids}
    predecessors: dict[str, list[str]] = {nid: [] for nid in node_ids}
    for edge in definition.edges:
        if edge.source not in seen:
            raise GraphError(f"Edge {edge.id}: source '{edge.source}' not found")
        if edge.target not in seen:
            raise GraphError(f"Edge {edge.id}: target '{edge.target}' not found")
        # Parallel edges between the same pair count once
        if edge.target not in successors[edge.source]:
            successors[edge.source].append(edge.target)
            predecessors[edge.target].append(edge.source)

    return ExecutionGraph(node_ids=node_ids, successors=successors, predecessors=predecessors)


def plan(graph: ExecutionGraph, strict: bool = True) -> list[str]:
    """Return node ids such that every node appears after all its predecessors.

    Args:
        graph: Graph built by ``build_execution_graph``.
        strict: When True (the default, used for execution) a graph with no
            topological order raises GraphError. When False, nodes the
            traversal never reached are appended once in declaration order,
            which is useful for rendering a broken graph.

    Raises:
        GraphError: If ``strict`` and the graph contains a cycle.
    """
    indegree = {nid: len(graph.predecessors.get(nid, [])) for nid in graph.node_ids}
    ready = [(graph.index[nid], nid) for nid in graph.node_ids if indegree[nid] == 0]
    heapq.heapify(ready)

    order: list[str] = []
    visited: set[str] = set()
    while ready:
        _, node_id = heapq.heappop(ready)
        order.append(node_id)
        visited.add(node_id)
        for succ in graph.successors.get(node_id, []):
            indegree[succ] -= 1
            if indegree[succ] == 0:
                heapq.heappush(ready, (graph.index[succ], succ))

    if len(order) < len(graph.node_ids):
        remaining = [nid for nid in graph.node_ids if nid not in visited]
        if strict:
            raise GraphError(_describe_cycle(graph, remaining))
        logger.warning(f"No topological order for nodes {remaining}; appending in declaration order")
        order.extend(remaining)

    return order


def parallel_levels(graph: ExecutionGraph) -> list[list[str]]:
    """Topological generations: nodes in the same level have no mutual dependency."""
    try:
        levels = nx.topological_generations(graph.to_networkx())
        return [sorted(level, key=graph.index.__getitem__) for level in levels]
    except nx.NetworkXUnfeasible as e:
        raise GraphError(f"Cannot compute levels for cyclic graph: {e}") from e


def _describe_cycle(graph: ExecutionGraph, remaining: list[str]) -> str:
    try:
        cycle = nx.find_cycle(graph.to_networkx().subgraph(remaining))
        path = " -> ".join(str(e[0]) for e in cycle)
        return f"Cycle detected: {path} -> {cycle[0][0]}"
    except nx.NetworkXNoCycle:
        return f"No topological order exists for nodes: {', '.join(remaining)}"
