"""Immutable in-memory recipe model.

A Component is built once per run from a validated RecipeSchema and is
never mutated afterwards. Source descriptors are a small family of
frozen dataclasses, one per unpack strategy, so downstream code
dispatches on the type instead of probing optional fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mktcb.errors import MalformedRecipeError
from mktcb.recipes.schema import (
    FileSourceSchema,
    RecipeSchema,
    TarSourceSchema,
    XzSourceSchema,
)
from mktcb.types import UnpackStrategy


@dataclass(frozen=True)
class SourceDescriptor:
    """One fetchable unit of a component.

    Attributes:
        location: URL, or the local path relative to the recipe directory.
        digest: Expected SHA-256 digest (always set for network sources).
        dest: Destination below the component's sources directory.
        local_path: Absolute path of a local source, None for network ones.
    """

    location: str
    digest: str | None
    dest: str | None = None
    local_path: Path | None = None

    strategy = UnpackStrategy.FILE

    @property
    def is_remote(self) -> bool:
        return self.local_path is None

    @property
    def filename(self) -> str:
        """Last path component of the location."""
        return self.location.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]

    def snapshot(self) -> dict[str, Any]:
        """Normalized view of the descriptor for fingerprinting."""
        return {
            "unpack": self.strategy.value,
            "location": self.location,
            "dest": self.dest,
        }


@dataclass(frozen=True)
class TarballSource(SourceDescriptor):
    """Archive unpacked with tar."""

    strip_components: int = 0

    strategy = UnpackStrategy.TAR

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data["strip_components"] = self.strip_components
        return data


@dataclass(frozen=True)
class VerbatimSource(SourceDescriptor):
    """File copied as is."""

    mode: int | None = None

    strategy = UnpackStrategy.FILE

    def snapshot(self) -> dict[str, Any]:
        data = super().snapshot()
        data["mode"] = self.mode
        return data


@dataclass(frozen=True)
class XzSource(SourceDescriptor):
    """Single xz-compressed file, decompressed on unpack."""

    strategy = UnpackStrategy.XZ


@dataclass(frozen=True)
class BuildStep:
    """One ordered action run inside the build workspace."""

    name: str
    run: str | tuple[str, ...]
    cwd: str | None = None

    @property
    def uses_shell(self) -> bool:
        return isinstance(self.run, str)

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "run": self.run if isinstance(self.run, str) else list(self.run),
            "cwd": self.cwd,
        }


@dataclass(frozen=True)
class PackageMetadata:
    """Native package metadata for a component."""

    name: str
    description: str = ""
    depends: tuple[str, ...] = ()
    architecture: str | None = None
    maintainer: str | None = None
    section: str = "misc"
    priority: str = "optional"

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "depends": list(self.depends),
            "architecture": self.architecture,
            "maintainer": self.maintainer,
            "section": self.section,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class Component:
    """A node of the build graph.

    Attributes:
        name: Unique component name.
        version: Version string.
        sources: Source descriptors in unpack order.
        steps: Build steps in execution order.
        package: Package metadata, None for internal-only components.
        depends: Names of components of the library this one depends on.
        external: Dependency names satisfied outside the graph.
        internal_only: Build-only component, no package emitted.
        recipe_dir: Directory holding the recipe and its auxiliary files.
        patches: Absolute paths of patches applied after unpacking.
        config: Absolute path of the configuration copied as .config.
        env: Extra environment variables for build steps.
    """

    name: str
    version: str
    sources: tuple[SourceDescriptor, ...]
    steps: tuple[BuildStep, ...]
    package: PackageMetadata | None
    depends: tuple[str, ...] = ()
    external: tuple[str, ...] = ()
    internal_only: bool = False
    recipe_dir: Path | None = None
    patches: tuple[Path, ...] = ()
    config: Path | None = None
    env: tuple[tuple[str, str], ...] = field(default=())
    description: str | None = None

    @property
    def environment(self) -> dict[str, str]:
        return dict(self.env)

    def snapshot(self) -> dict[str, Any]:
        """Normalized view of everything in the recipe that affects the build.

        Package metadata is deliberately absent: it only affects packaging.
        Auxiliary file contents are hashed separately by the fingerprint.
        """
        return {
            "name": self.name,
            "version": self.version,
            "sources": [s.snapshot() for s in self.sources],
            "steps": [s.snapshot() for s in self.steps],
            "depends": sorted(self.depends),
            "external": sorted(self.external),
            "internal_only": self.internal_only,
            "patches": [p.name for p in self.patches],
            "config": self.config.name if self.config else None,
            "env": {k: v for k, v in sorted(self.env)},
        }


def _source_from_schema(
    source: TarSourceSchema | FileSourceSchema | XzSourceSchema,
    recipe_dir: Path | None,
) -> SourceDescriptor:
    local_path: Path | None = None
    if source.path is not None:
        base = recipe_dir if recipe_dir is not None else Path.cwd()
        local_path = base / source.path
    location = source.url if source.url is not None else str(source.path)
    common: dict[str, Any] = {
        "location": location,
        "digest": source.sha256,
        "dest": source.dest,
        "local_path": local_path,
    }
    if isinstance(source, TarSourceSchema):
        return TarballSource(strip_components=source.strip_components, **common)
    if isinstance(source, FileSourceSchema):
        mode = int(source.mode, 8) if source.mode else None
        return VerbatimSource(mode=mode, **common)
    return XzSource(**common)


def component_from_schema(
    recipe: RecipeSchema,
    recipe_dir: Path | None = None,
) -> Component:
    """Build an immutable Component from a validated schema.

    Args:
        recipe: Validated RecipeSchema.
        recipe_dir: Directory relative paths are resolved against.

    Returns:
        Component instance.
    """
    base = recipe_dir if recipe_dir is not None else Path.cwd()
    package: PackageMetadata | None = None
    if recipe.package is not None:
        package = PackageMetadata(
            name=recipe.package.name,
            description=recipe.package.description or recipe.description or "",
            depends=tuple(recipe.package.depends),
            architecture=recipe.package.architecture,
            maintainer=recipe.package.maintainer,
            section=recipe.package.section,
            priority=recipe.package.priority,
        )

    return Component(
        name=recipe.name,
        version=recipe.version,
        sources=tuple(_source_from_schema(s, recipe_dir) for s in recipe.sources),
        steps=tuple(
            BuildStep(
                name=step.name,
                run=step.run if isinstance(step.run, str) else tuple(step.run),
                cwd=step.cwd,
            )
            for step in recipe.steps
        ),
        package=package,
        depends=tuple(recipe.depends),
        external=tuple(recipe.external),
        internal_only=recipe.internal_only,
        recipe_dir=recipe_dir,
        patches=tuple(base / p for p in recipe.patches),
        config=base / recipe.config if recipe.config else None,
        env=tuple(sorted(recipe.env.items())),
        description=recipe.description,
    )


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "<recipe>"
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


def component_from_descriptor(
    data: dict[str, Any],
    recipe_dir: Path | None = None,
    recipe_path: Path | None = None,
) -> Component:
    """Validate parsed descriptor data and build a Component.

    Args:
        data: Parsed descriptor mapping.
        recipe_dir: Directory relative paths are resolved against.
        recipe_path: Descriptor path, for error reporting.

    Returns:
        Component instance.

    Raises:
        MalformedRecipeError: If required fields are missing or invalid.
    """
    name = data.get("name") if isinstance(data.get("name"), str) else None
    try:
        recipe = RecipeSchema.model_validate(data)
    except ValidationError as e:
        where = f" ({recipe_path})" if recipe_path else ""
        raise MalformedRecipeError(
            f"Invalid recipe{where}: {_format_validation_error(e)}",
            component=name,
            path=recipe_path,
        ) from e
    return component_from_schema(recipe, recipe_dir)


__all__ = [
    "BuildStep",
    "Component",
    "PackageMetadata",
    "SourceDescriptor",
    "TarballSource",
    "VerbatimSource",
    "XzSource",
    "component_from_descriptor",
    "component_from_schema",
]
