"""Library resolution.

This module handles:
- Enumerating the per-component subdirectories of a library root
- Parsing each recipe into a Component
- Resolving declared dependencies into graph edges
- Rejecting unresolved references and dependency cycles

Resolution only reads below the library root. It is the single
validation gate run before any network or build activity.
"""

from __future__ import annotations

import logging
from pathlib import Path

from mktcb.errors import (
    DependencyCycleError,
    MalformedRecipeError,
    ResolutionError,
    UnresolvedDependencyError,
)
from mktcb.library.graph import DependencyGraph, find_cycle
from mktcb.recipes.io import load_component_dir
from mktcb.recipes.models import Component

logger = logging.getLogger(__name__)


def iter_component_dirs(library_root: Path) -> list[Path]:
    """List the component directories of a library, sorted by name.

    Hidden directories and plain files at the root are ignored.

    Raises:
        ResolutionError: If the library root is not a directory.
    """
    if not library_root.is_dir():
        raise ResolutionError(
            f"Library directory not found: {library_root}",
            code="library_not_found",
        )
    return sorted(
        p for p in library_root.iterdir() if p.is_dir() and not p.name.startswith(".")
    )


def discover_components(library_root: Path) -> list[Component]:
    """Parse every component of a library.

    Args:
        library_root: Root of the recipe library.

    Returns:
        Components sorted by name.

    Raises:
        MalformedRecipeError: If any recipe is invalid.
        ResolutionError: If the library root is missing.
    """
    components: list[Component] = []
    seen: dict[str, Path] = {}
    for component_dir in iter_component_dirs(library_root):
        component = load_component_dir(component_dir)
        if component.name in seen:
            raise MalformedRecipeError(
                f"Duplicate component name (also defined in {seen[component.name]})",
                component=component.name,
            )
        seen[component.name] = component_dir
        logger.debug("Discovered component %s %s", component.name, component.version)
        components.append(component)
    return components


def build_graph(components: list[Component]) -> DependencyGraph:
    """Resolve dependencies between components and validate the graph.

    Args:
        components: Parsed components with unique names.

    Returns:
        Validated DependencyGraph.

    Raises:
        UnresolvedDependencyError: If a dependency is neither a component
            nor declared external.
        DependencyCycleError: If dependencies form a cycle.
    """
    ordered = sorted(components, key=lambda c: c.name)
    index = {c.name: i for i, c in enumerate(ordered)}

    edges: list[list[int]] = []
    for component in ordered:
        targets: list[int] = []
        for dep in component.depends:
            if dep not in index:
                raise UnresolvedDependencyError(component.name, dep)
            targets.append(index[dep])
        edges.append(targets)

    cycle = find_cycle(edges)
    if cycle is not None:
        raise DependencyCycleError([ordered[i].name for i in cycle])

    return DependencyGraph(ordered, edges)


def resolve_library(library_root: Path) -> DependencyGraph:
    """Turn a library directory into a validated dependency graph.

    Args:
        library_root: Root of the recipe library.

    Returns:
        Validated DependencyGraph.

    Raises:
        ResolutionError: Any resolution failure (malformed recipe,
            unresolved dependency, cycle, missing library).
    """
    logger.info("Resolving library %s", library_root)
    components = discover_components(library_root)
    graph = build_graph(components)
    logger.info("Resolved %d components", len(graph))
    return graph


__all__ = [
    "build_graph",
    "discover_components",
    "iter_component_dirs",
    "resolve_library",
]
