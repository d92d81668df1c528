"""Tests for graph validation and the execution planner.

Tests cover:
- Topological order: every edge u->v has u before v, each node exactly once
- Deterministic tie-breaking by declaration order
- GraphError on cycles, unknown edge endpoints and duplicate ids
- Parallel levels for display
"""

from __future__ import annotations

import itertools

import pytest

from nodeflow.core.errors import GraphError
from nodeflow.core.graph_schema import WorkflowDefinition
from nodeflow.core.planner import build_execution_graph, parallel_levels, plan


def _assert_topological(order, definition):
    assert sorted(order) == sorted(n.id for n in definition.nodes)
    assert len(order) == len(set(order))
    position = {nid: i for i, nid in enumerate(order)}
    for edge in definition.edges:
        assert position[edge.source] < position[edge.target], edge


class TestPlan:
    """Tests for plan()."""

    def test_linear_chain(self, workflow_factory):
        wf = workflow_factory({"a": "set", "b": "set", "c": "set"}, [("a", "b"), ("b", "c")])
        assert plan(build_execution_graph(wf)) == ["a", "b", "c"]

    def test_diamond_respects_edges(self, workflow_factory):
        wf = workflow_factory(
            {"a": "set", "b": "set", "c": "set", "d": "set"},
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        order = plan(build_execution_graph(wf))
        _assert_topological(order, wf)
        assert order == ["a", "b", "c", "d"]

    def test_ties_broken_by_declaration_order(self, workflow_factory):
        wf = workflow_factory({"z": "set", "y": "set", "x": "set"})
        assert plan(build_execution_graph(wf)) == ["z", "y", "x"]

    def test_declared_after_dependent(self, workflow_factory):
        """A node declared after its dependent still comes first."""
        wf = workflow_factory({"child": "set", "parent": "set"}, [("parent", "child")])
        assert plan(build_execution_graph(wf)) == ["parent", "child"]

    def test_disconnected_components_all_covered(self, workflow_factory):
        wf = workflow_factory(
            {"a": "set", "b": "set", "c": "set", "d": "set", "lonely": "set"},
            [("a", "b"), ("c", "d")],
        )
        order = plan(build_execution_graph(wf))
        _assert_topological(order, wf)
        assert order == ["a", "b", "c", "d", "lonely"]

    def test_every_permutation_of_declaration_is_valid(self, workflow_factory):
        names = ["a", "b", "c", "d"]
        edges = [("a", "b"), ("b", "d"), ("c", "d")]
        for perm in itertools.permutations(names):
            wf = workflow_factory({n: "set" for n in perm}, edges)
            _assert_topological(plan(build_execution_graph(wf)), wf)

    def test_same_definition_gives_same_order(self, workflow_factory):
        wf = workflow_factory(
            {"a": "set", "b": "set", "c": "set", "d": "set"},
            [("a", "c"), ("b", "c"), ("c", "d")],
        )
        orders = {tuple(plan(build_execution_graph(wf))) for _ in range(5)}
        assert len(orders) == 1

    def test_parallel_edges_count_once(self, workflow_factory):
        wf = workflow_factory({"a": "set", "b": "set"}, [("a", "b"), ("a", "b")])
        graph = build_execution_graph(wf)
        assert graph.predecessors["b"] == ["a"]
        assert plan(graph) == ["a", "b"]


class TestGraphErrors:
    """Structural errors are raised before anything runs."""

    def test_cycle_raises(self, workflow_factory):
        wf = workflow_factory(
            {"a": "set", "b": "set", "c": "set"}, [("a", "b"), ("b", "c"), ("c", "b")]
        )
        with pytest.raises(GraphError, match="Cycle detected"):
            plan(build_execution_graph(wf))

    def test_self_loop_raises(self, workflow_factory):
        wf = workflow_factory({"a": "set"}, [("a", "a")])
        with pytest.raises(GraphError):
            plan(build_execution_graph(wf))

    def test_non_strict_appends_cyclic_nodes_once(self, workflow_factory):
        wf = workflow_factory(
            {"a": "set", "b": "set", "c": "set"}, [("b", "c"), ("c", "b")]
        )
        order = plan(build_execution_graph(wf), strict=False)
        assert order == ["a", "b", "c"]

    def test_unknown_target(self, workflow_factory):
        wf = workflow_factory({"a": "set"}, [("a", "ghost")])
        with pytest.raises(GraphError, match="target 'ghost' not found"):
            build_execution_graph(wf)

    def test_unknown_source(self, workflow_factory):
        wf = workflow_factory({"a": "set"}, [("ghost", "a")])
        with pytest.raises(GraphError, match="source 'ghost' not found"):
            build_execution_graph(wf)

    def test_duplicate_node_id(self):
        wf = WorkflowDefinition.model_validate(
            {
                "id": "dup",
                "name": "dup",
                "nodes": [{"id": "a", "type": "set"}, {"id": "a", "type": "no-op"}],
            }
        )
        with pytest.raises(GraphError, match="Duplicate node ID"):
            build_execution_graph(wf)


class TestValidateGraph:
    """WorkflowDefinition.validate_graph() collects every problem."""

    def test_valid_graph_has_no_errors(self, workflow_factory):
        wf = workflow_factory({"a": "set", "b": "set"}, [("a", "b")])
        assert wf.validate_graph() == []

    def test_reports_multiple_errors(self, workflow_factory):
        wf = workflow_factory({"a": "set", "b": "set"}, [("a", "b"), ("b", "a"), ("a", "x")])
        errors = wf.validate_graph()
        assert any("Cycle detected" in e for e in errors)
        assert any("'x' not found" in e for e in errors)

    def test_empty_workflow(self):
        wf = WorkflowDefinition(id="empty", name="empty", nodes=[])
        assert "Workflow must have at least one node" in wf.validate_graph()

    def test_blank_type_rejected(self):
        with pytest.raises(ValueError):
            WorkflowDefinition.model_validate(
                {"id": "w", "name": "w", "nodes": [{"id": "a", "type": "  "}]}
            )


class TestParallelLevels:
    def test_levels(self, workflow_factory):
        wf = workflow_factory(
            {"a": "set", "b": "set", "c": "set", "d": "set"},
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        assert parallel_levels(build_execution_graph(wf)) == [["a"], ["b", "c"], ["d"]]

    def test_levels_on_cycle_raise(self, workflow_factory):
        wf = workflow_factory({"a": "set", "b": "set"}, [("a", "b"), ("b", "a")])
        with pytest.raises(GraphError):
            parallel_levels(build_execution_graph(wf))
