"""Tests for the dependency graph."""

import pytest
from conftest import recipe_data

from mktcb.library.graph import DependencyGraph, find_cycle
from mktcb.recipes.models import component_from_descriptor


def make_graph(adjacency: dict[str, list[str]]) -> DependencyGraph:
    return DependencyGraph.from_components(
        component_from_descriptor(recipe_data(name, depends=deps))
        for name, deps in adjacency.items()
    )


class TestFindCycle:
    """Tests for find_cycle."""

    def test_acyclic(self):
        """No cycle in a DAG."""
        assert find_cycle([[1], [2], []]) is None

    def test_self_loop(self):
        """A node depending on itself is a cycle."""
        assert find_cycle([[0]]) == [0, 0]

    def test_cycle_chain(self):
        """The returned chain starts and ends with the same node."""
        cycle = find_cycle([[1], [2], [0]])
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert sorted(set(cycle)) == [0, 1, 2]

    def test_cycle_off_the_root(self):
        """Cycles not reachable from the first node are found."""
        cycle = find_cycle([[], [2], [1]])
        assert cycle is not None
        assert set(cycle) == {1, 2}


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_topological_order(self):
        """Dependencies come before dependents, ties broken by name."""
        graph = make_graph(
            {
                "kernel": ["toolchain"],
                "bootloader": ["toolchain"],
                "toolchain": [],
                "image": ["kernel", "bootloader"],
            }
        )
        order = [c.name for c in graph.topological_order()]
        assert order == ["toolchain", "bootloader", "kernel", "image"]

    def test_dependencies_and_dependents(self):
        """Direct edges are exposed both ways."""
        graph = make_graph({"kernel": ["toolchain"], "toolchain": []})
        assert [c.name for c in graph.dependencies("kernel")] == ["toolchain"]
        assert [c.name for c in graph.dependents("toolchain")] == ["kernel"]
        assert graph.dependencies("toolchain") == []

    def test_transitive_closures(self):
        """Transitive dependents and dependencies follow every path."""
        graph = make_graph(
            {"a": [], "b": ["a"], "c": ["b"], "d": [], "e": ["d", "c"]}
        )
        assert graph.transitive_dependents("a") == {"b", "c", "e"}
        assert graph.transitive_dependencies("e") == {"a", "b", "c", "d"}
        assert graph.transitive_dependents("e") == set()

    def test_subgraph(self):
        """A subgraph keeps the requested components and what they need."""
        graph = make_graph({"a": [], "b": ["a"], "c": []})
        sub = graph.subgraph(["b"])
        assert sorted(sub.names) == ["a", "b"]
        assert [c.name for c in sub.dependencies("b")] == ["a"]

    def test_subgraph_unknown_name(self):
        """Unknown names raise KeyError."""
        graph = make_graph({"a": []})
        with pytest.raises(KeyError):
            graph.subgraph(["zzz"])

    def test_container_protocol(self):
        """Graphs support len, iteration and membership."""
        graph = make_graph({"a": [], "b": ["a"]})
        assert len(graph) == 2
        assert "a" in graph
        assert "zzz" not in graph
        assert {c.name for c in graph} == {"a", "b"}
        assert graph.get("b").depends == ("a",)
