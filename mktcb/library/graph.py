"""Dependency graph over the components of a library.

Components are stored in an arena (a tuple indexed by position) and the
edges as integer indices resolved once at construction time, so the
graph holds no references between components. The graph is read-only
once built.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Iterator, Sequence

from mktcb.recipes.models import Component


def find_cycle(edges: Sequence[Sequence[int]]) -> list[int] | None:
    """Find one cycle in an adjacency list.

    Depth-first search with recursion-stack marking, iterative so that deep
    chains do not hit the interpreter recursion limit.

    Args:
        edges: edges[i] lists the nodes node i points to.

    Returns:
        The cycle as a node list whose first and last entries are equal,
        or None if the graph is acyclic.
    """
    white, grey, black = 0, 1, 2
    color = [white] * len(edges)

    for root in range(len(edges)):
        if color[root] != white:
            continue
        path: list[int] = [root]
        iterators: list[Iterator[int]] = [iter(edges[root])]
        color[root] = grey
        while iterators:
            node = next(iterators[-1], None)
            if node is None:
                color[path.pop()] = black
                iterators.pop()
                continue
            if color[node] == grey:
                return path[path.index(node):] + [node]
            if color[node] == white:
                color[node] = grey
                path.append(node)
                iterators.append(iter(edges[node]))
    return None


class DependencyGraph:
    """Directed acyclic graph of components keyed by name.

    Callers are expected to go through the resolver, which validates the
    graph before constructing it.
    """

    def __init__(
        self,
        components: Iterable[Component],
        edges: Sequence[Sequence[int]],
    ) -> None:
        self._components = tuple(components)
        self._index = {c.name: i for i, c in enumerate(self._components)}
        self._deps = tuple(tuple(sorted(set(e))) for e in edges)
        dependents: list[list[int]] = [[] for _ in self._components]
        for node, targets in enumerate(self._deps):
            for target in targets:
                dependents[target].append(node)
        self._dependents = tuple(tuple(sorted(d)) for d in dependents)

    @classmethod
    def from_components(cls, components: Iterable[Component]) -> DependencyGraph:
        """Build a graph, resolving each component's depends by name.

        Raises:
            KeyError: If a dependency is not one of the components.
        """
        items = sorted(components, key=lambda c: c.name)
        index = {c.name: i for i, c in enumerate(items)}
        edges = [[index[d] for d in c.depends] for c in items]
        return cls(items, edges)

    def __len__(self) -> int:
        return len(self._components)

    def __iter__(self) -> Iterator[Component]:
        return iter(self._components)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    @property
    def names(self) -> list[str]:
        return [c.name for c in self._components]

    def index_of(self, name: str) -> int:
        return self._index[name]

    def get(self, name: str) -> Component:
        """Get a component by name.

        Raises:
            KeyError: If the component is unknown.
        """
        return self._components[self._index[name]]

    def dependencies(self, name: str) -> list[Component]:
        """Direct dependencies of a component."""
        return [self._components[i] for i in self._deps[self._index[name]]]

    def dependents(self, name: str) -> list[Component]:
        """Components that directly depend on a component."""
        return [self._components[i] for i in self._dependents[self._index[name]]]

    def _closure(self, start: int, adjacency: Sequence[Sequence[int]]) -> set[int]:
        seen: set[int] = set()
        stack = list(adjacency[start])
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(adjacency[node])
        return seen

    def transitive_dependents(self, name: str) -> set[str]:
        """All components that depend on a component, directly or not."""
        nodes = self._closure(self._index[name], self._dependents)
        return {self._components[i].name for i in nodes}

    def transitive_dependencies(self, name: str) -> set[str]:
        """All components a component depends on, directly or not."""
        nodes = self._closure(self._index[name], self._deps)
        return {self._components[i].name for i in nodes}

    def topological_order(self) -> list[Component]:
        """Components ordered so that dependencies come first.

        Ties are broken by name for a deterministic order.
        """
        remaining = [len(d) for d in self._deps]
        ready = [(self._components[i].name, i) for i, n in enumerate(remaining) if n == 0]
        heapq.heapify(ready)
        order: list[Component] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(self._components[node])
            for dependent in self._dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._components[dependent].name, dependent))
        if len(order) != len(self._components):
            raise ValueError("dependency graph contains a cycle")
        return order

    def subgraph(self, names: Iterable[str]) -> DependencyGraph:
        """Restrict the graph to some components and everything they need.

        Raises:
            KeyError: If a name is unknown.
        """
        keep: set[str] = set()
        for name in names:
            keep.add(self.get(name).name)
            keep |= self.transitive_dependencies(name)
        return DependencyGraph.from_components(c for c in self._components if c.name in keep)


__all__ = ["DependencyGraph", "find_cycle"]
