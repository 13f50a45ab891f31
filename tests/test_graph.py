"""Unit tests for the shared dependency graph."""

import pytest

from flowengine.engine.graph import DependencyGraph, build_flow_graph
from flowengine.errors import CircularDependency

from builders import action, make_flow


class TestDependencyGraph:
    """Ordering and cycle detection."""

    def test_dependencies_come_first(self):
        graph = DependencyGraph()
        graph.add_dependency("c", "b")
        graph.add_dependency("b", "a")

        order = graph.topological_order()

        assert order.index("a") < order.index("b") < order.index("c")
        assert sorted(order) == ["a", "b", "c"]

    def test_order_is_deterministic(self):
        def build():
            graph = DependencyGraph(["x", "y", "z"])
            graph.add_dependency("z", "x")
            graph.add_dependency("y", "x")
            return graph.topological_order()

        assert build() == build() == ["x", "y", "z"]

    def test_independent_nodes_keep_insertion_order(self):
        graph = DependencyGraph(["one", "two", "three"])
        assert graph.topological_order() == ["one", "two", "three"]

    def test_cycle_detected(self):
        graph = DependencyGraph()
        graph.add_dependency("a", "b")
        graph.add_dependency("b", "a")

        cycle = graph.find_cycle()

        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b"}

    def test_topological_order_raises_on_cycle(self):
        graph = DependencyGraph()
        graph.add_dependency("a", "b")
        graph.add_dependency("b", "c")
        graph.add_dependency("c", "a")

        with pytest.raises(CircularDependency) as exc_info:
            graph.topological_order()

        assert exc_info.value.node_id in {"a", "b", "c"}
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]

    def test_self_loop(self):
        graph = DependencyGraph()
        graph.add_dependency("a", "a")
        assert graph.find_cycle() == ["a", "a"]

    def test_dependents(self):
        graph = DependencyGraph()
        graph.add_dependency("b", "a")
        graph.add_dependency("c", "a")
        assert graph.dependents("a") == ["b", "c"]
        assert graph.dependencies("b") == ["a"]
        assert "a" in graph
        assert len(graph) == 3

    def test_duplicate_edge_ignored(self):
        graph = DependencyGraph()
        graph.add_dependency("b", "a")
        graph.add_dependency("b", "a")
        assert graph.dependencies("b") == ["a"]

    def test_long_chain_does_not_recurse(self):
        graph = DependencyGraph()
        for i in range(1, 5000):
            graph.add_dependency(f"n{i}", f"n{i - 1}")
        order = graph.topological_order()
        assert order[0] == "n0"
        assert order[-1] == "n4999"


class TestBuildFlowGraph:
    """Edges induced by step inputs and control edges."""

    def test_data_and_control_edges(self):
        flow = make_flow([
            action("a", "test.fetch", onSuccess=["c"]),
            action("b", "test.double", inputs={"value": {"type": "step", "value": "a"}}),
            action("c", "test.echo"),
        ])

        graph = build_flow_graph(flow)

        assert graph.dependencies("b") == ["a"]
        assert graph.dependencies("c") == ["a"]

    def test_unknown_references_left_out(self):
        flow = make_flow([
            action("a", "test.echo", inputs={"x": {"type": "step", "value": "ghost"}}),
        ])
        graph = build_flow_graph(flow)
        assert graph.nodes == ["a"]
