"""Staged tree discovery and manifest generation.

This module handles:
- Discovering the files of a staged install tree
- Computing checksums
- Generating, writing and reading build manifests
"""

from __future__ import annotations

import json
import logging
import stat
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mktcb.fetch.download import compute_file_sha256
from mktcb.types import ArtifactInfo

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"


def discover_artifacts(stage_dir: Path) -> list[ArtifactInfo]:
    """Discover the regular files of a staged install tree.

    Symbolic links are not followed and not listed.

    Args:
        stage_dir: Root of the staged tree.

    Returns:
        List of ArtifactInfo sorted by relative path.
    """
    if not stage_dir.exists():
        logger.warning("Stage directory does not exist: %s", stage_dir)
        return []

    artifacts: list[ArtifactInfo] = []
    for path in sorted(stage_dir.rglob("*")):
        if path.is_symlink() or not path.is_file():
            continue
        st = path.stat()
        artifacts.append(
            ArtifactInfo(
                relative_path=path.relative_to(stage_dir).as_posix(),
                size_bytes=st.st_size,
                sha256=compute_file_sha256(path),
                mode=stat.S_IMODE(st.st_mode),
            )
        )

    logger.debug("Discovered %d staged files in %s", len(artifacts), stage_dir)
    return artifacts


def generate_manifest(
    component: str,
    version: str,
    fingerprint: str,
    artifacts: list[ArtifactInfo],
    build_inputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        component: Component name.
        version: Component version.
        fingerprint: Build fingerprint.
        artifacts: Staged files.
        build_inputs: Inputs the fingerprint was computed from.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "component": component,
        "component_version": version,
        "fingerprint": fingerprint,
        "files": [asdict(a) for a in artifacts],
        "summary": {
            "total_files": len(artifacts),
            "total_size_bytes": sum(a.size_bytes for a in artifacts),
        },
    }
    if build_inputs:
        manifest["build_inputs"] = build_inputs
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.debug("Wrote manifest to %s", output_path)
    return output_path


def read_manifest(path: Path) -> dict[str, Any] | None:
    """Read a manifest, returning None if missing or unreadable."""
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def manifest_files(manifest: dict[str, Any]) -> list[ArtifactInfo]:
    return [ArtifactInfo(**entry) for entry in manifest.get("files", [])]


def verify_stage(stage_dir: Path, manifest: dict[str, Any]) -> bool:
    """Check that a staged tree still holds the files a manifest lists.

    Only presence and size are compared; content hashes are not recomputed.
    """
    for entry in manifest_files(manifest):
        path = stage_dir / entry.relative_path
        if path.is_symlink() or not path.is_file():
            return False
        if path.stat().st_size != entry.size_bytes:
            return False
    return True


__all__ = [
    "MANIFEST_VERSION",
    "discover_artifacts",
    "generate_manifest",
    "manifest_files",
    "read_manifest",
    "verify_stage",
    "write_manifest",
]
