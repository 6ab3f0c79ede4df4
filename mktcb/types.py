"""Shared type definitions for mktcb.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ComponentState(str, Enum):
    """State of a component pipeline during a run."""

    PENDING = "pending"
    FETCHING = "fetching"
    BUILDING = "building"
    PACKAGING = "packaging"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ComponentState.DONE, ComponentState.FAILED)


class Phase(str, Enum):
    """Pipeline phase an error originated from."""

    RESOLVE = "resolve"
    FETCH = "fetch"
    BUILD = "build"
    PACKAGE = "package"


class UnpackStrategy(str, Enum):
    """How a fetched source is laid out in the sources directory."""

    TAR = "tar"
    FILE = "file"
    XZ = "xz"


@dataclass
class ArtifactInfo:
    """Information about one file of a staged install tree."""

    relative_path: str
    size_bytes: int
    sha256: str
    mode: int = 0o644


@dataclass
class FetchedSource:
    """A source that has been retrieved, verified and unpacked."""

    location: str
    digest: str
    path: Path
    from_cache: bool = False


@dataclass
class BuildArtifact:
    """Output of a successful build: the staged install tree."""

    component: str
    fingerprint: str
    stage_dir: Path
    manifest_path: Path
    cache_hit: bool = False
    files: list[ArtifactInfo] = field(default_factory=list)


@dataclass
class PackageArtifact:
    """Output of a successful packaging step."""

    component: str
    package_name: str
    version: str
    path: Path
    depends: list[str] = field(default_factory=list)
    cache_hit: bool = False


__all__ = [
    "ArtifactInfo",
    "BuildArtifact",
    "ComponentState",
    "FetchedSource",
    "PackageArtifact",
    "Phase",
    "UnpackStrategy",
]
