"""Build fingerprint computation.

This module handles:
- Canonical input snapshot creation from a component and its sources
- Deterministic hash computation over normalized inputs
- Package fingerprints layered on top of build fingerprints

A fingerprint covers the recipe content, the digests of every source,
patch and configuration file, and the fingerprints of the direct
dependencies. Since the latter already cover their own dependencies, a
change anywhere upstream propagates to every transitive dependent.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from mktcb.fetch.download import compute_file_sha256
from mktcb.recipes.models import Component

# Schema version for fingerprint format; bump when the format changes
FINGERPRINT_SCHEMA_VERSION = "1"


@dataclass
class BuildInputs:
    """Canonical representation of all build inputs.

    This structure is serialized to JSON and hashed to produce the
    fingerprint. It is also recorded in the build manifest.

    Attributes:
        schema_version: Version of the fingerprint schema.
        component: Normalized recipe snapshot (package metadata excluded).
        source_digests: SHA-256 of every source, in declaration order.
        patch_digests: SHA-256 of every patch, in application order.
        config_digest: SHA-256 of the configuration file (or None).
        dependencies: Direct dependency name to its build fingerprint.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    component: dict[str, Any] = field(default_factory=dict)
    source_digests: list[str] = field(default_factory=list)
    patch_digests: list[str] = field(default_factory=list)
    config_digest: str | None = None
    dependencies: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def hash_canonical(data: Mapping[str, Any]) -> str:
    """Hash a JSON-serializable mapping in canonical form.

    Args:
        data: Mapping to hash.

    Returns:
        Digest as string (sha256:...).
    """
    # Serialize to canonical JSON (sorted keys, no extra whitespace)
    canonical_json = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def create_build_inputs(
    component: Component,
    source_digests: Sequence[str],
    dependency_fingerprints: Mapping[str, str] | None = None,
) -> BuildInputs:
    """Create canonical build inputs for a component.

    Args:
        component: Component to fingerprint.
        source_digests: Digests of the component's sources, in order.
        dependency_fingerprints: Fingerprints of the direct dependencies.

    Returns:
        BuildInputs instance.

    Raises:
        ValueError: If a dependency fingerprint is missing.
    """
    deps = dict(dependency_fingerprints or {})
    missing = [d for d in component.depends if d not in deps]
    if missing:
        raise ValueError(f"Missing fingerprints for dependencies: {', '.join(missing)}")

    return BuildInputs(
        component=component.snapshot(),
        source_digests=list(source_digests),
        patch_digests=[compute_file_sha256(p) for p in component.patches],
        config_digest=compute_file_sha256(component.config) if component.config else None,
        dependencies={name: deps[name] for name in sorted(component.depends)},
    )


def compute_fingerprint(inputs: BuildInputs) -> str:
    """Compute the build fingerprint from build inputs."""
    return hash_canonical(inputs.to_dict())


def compute_package_fingerprint(
    build_fingerprint: str,
    control: Mapping[str, str],
    backend: str,
) -> str:
    """Compute the fingerprint of a package.

    The package is valid as long as the staged tree (covered by the build
    fingerprint) and the rendered control fields are unchanged.

    Args:
        build_fingerprint: Fingerprint of the component's build.
        control: Rendered control fields.
        backend: Packaging backend name.

    Returns:
        Digest as string (sha256:...).
    """
    return hash_canonical(
        {
            "schema_version": FINGERPRINT_SCHEMA_VERSION,
            "build": build_fingerprint,
            "control": dict(control),
            "backend": backend,
        }
    )


__all__ = [
    "FINGERPRINT_SCHEMA_VERSION",
    "BuildInputs",
    "compute_fingerprint",
    "compute_package_fingerprint",
    "create_build_inputs",
    "hash_canonical",
]
