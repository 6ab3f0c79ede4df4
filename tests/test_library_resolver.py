"""Tests for library resolution."""

from pathlib import Path

import pytest
from conftest import recipe_data, write_recipe

from mktcb.errors import (
    DependencyCycleError,
    MalformedRecipeError,
    ResolutionError,
    UnresolvedDependencyError,
)
from mktcb.library.resolver import discover_components, iter_component_dirs, resolve_library


class TestIterComponentDirs:
    """Tests for iter_component_dirs."""

    def test_missing_library(self, tmp_path: Path):
        """A missing library root is a ResolutionError."""
        with pytest.raises(ResolutionError) as exc_info:
            iter_component_dirs(tmp_path / "nope")
        assert exc_info.value.code == "library_not_found"

    def test_ignores_files_and_hidden_dirs(self, library: Path):
        """Only visible subdirectories are component namespaces."""
        (library / "README").write_text("hi")
        (library / ".git").mkdir()
        (library / "uboot").mkdir()
        assert [p.name for p in iter_component_dirs(library)] == ["uboot"]


class TestResolveLibrary:
    """Tests for resolve_library."""

    def test_resolves_graph(self, library: Path):
        """Should build a graph over every component."""
        write_recipe(library, recipe_data("toolchain", package=False, internal_only=True))
        write_recipe(library, recipe_data("kernel", depends=["toolchain"]))
        write_recipe(library, recipe_data("uboot", depends=["toolchain"], external=["host-make"]))

        graph = resolve_library(library)

        assert sorted(graph.names) == ["kernel", "toolchain", "uboot"]
        assert graph.topological_order()[0].name == "toolchain"
        assert graph.get("toolchain").internal_only

    def test_empty_library(self, library: Path):
        """An empty library resolves to an empty graph."""
        assert len(resolve_library(library)) == 0

    def test_unresolved_dependency(self, library: Path):
        """Unknown, non-external dependencies are rejected by name."""
        write_recipe(library, recipe_data("kernel", depends=["toolchain"]))

        with pytest.raises(UnresolvedDependencyError) as exc_info:
            resolve_library(library)

        assert exc_info.value.component == "kernel"
        assert exc_info.value.missing == "toolchain"
        assert "toolchain" in str(exc_info.value)

    def test_external_dependency_is_not_an_edge(self, library: Path):
        """External names are satisfied outside the graph."""
        write_recipe(library, recipe_data("kernel", external=["toolchain"]))
        graph = resolve_library(library)
        assert graph.dependencies("kernel") == []

    def test_cycle(self, library: Path):
        """Cycles are rejected with the member chain."""
        write_recipe(library, recipe_data("a", depends=["b"]))
        write_recipe(library, recipe_data("b", depends=["c"]))
        write_recipe(library, recipe_data("c", depends=["a"]))

        with pytest.raises(DependencyCycleError) as exc_info:
            resolve_library(library)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        assert "->" in str(exc_info.value)
        assert exc_info.value.phase == "resolve"

    def test_self_dependency_is_a_cycle(self, library: Path):
        """A component depending on itself is a cycle."""
        write_recipe(library, recipe_data("a", depends=["a"]))
        with pytest.raises(DependencyCycleError) as exc_info:
            resolve_library(library)
        assert exc_info.value.cycle == ["a", "a"]

    def test_cycle_touches_nothing_outside_library(self, library: Path, tmp_path: Path):
        """Resolution only reads below the library root."""
        write_recipe(library, recipe_data("a", depends=["b"]))
        write_recipe(library, recipe_data("b", depends=["a"]))
        before = sorted(p.name for p in tmp_path.iterdir())

        with pytest.raises(DependencyCycleError):
            resolve_library(library)

        assert sorted(p.name for p in tmp_path.iterdir()) == before
        assert sorted(p.name for p in library.iterdir()) == ["a", "b"]

    def test_malformed_recipe(self, library: Path):
        """Malformed recipes surface as MalformedRecipeError."""
        data = recipe_data("kernel")
        del data["version"]
        write_recipe(library, data)
        with pytest.raises(MalformedRecipeError):
            discover_components(library)
