"""Packaging service.

This module provides the high-level packaging API:
- package_component(): turn a component's staged tree into a native
  package, reusing the previous package when nothing changed

Per-component layout below the build directory::

    <name>/package/<package>_<version>_<arch>.deb
    <name>/package/fingerprint    fingerprint of the published package
    <name>/package/root/          tree handed to the backend (transient)
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Sequence
from pathlib import Path

from mktcb.builds.fingerprint import compute_package_fingerprint
from mktcb.errors import MktcbError, PackagingError
from mktcb.interrupt import Interrupt
from mktcb.packaging.backend import PackagingBackend
from mktcb.packaging.control import (
    format_control,
    package_filename,
    render_control_fields,
)
from mktcb.packaging.staging import stage_package_tree
from mktcb.recipes.models import Component
from mktcb.types import BuildArtifact, PackageArtifact

logger = logging.getLogger(__name__)

FINGERPRINT_FILENAME = "fingerprint"


def _read_fingerprint(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except OSError:
        return None


def package_component(
    component: Component,
    artifact: BuildArtifact,
    dependencies: Sequence[Component],
    package_dir: Path,
    backend: PackagingBackend,
    maintainer: str = "mktcb <mktcb@localhost>",
    architecture: str = "all",
    interrupt: Interrupt | None = None,
) -> PackageArtifact:
    """Produce the native package of a component.

    Args:
        component: Component to package.
        artifact: Build output of the component.
        dependencies: The component's direct dependencies.
        package_dir: Directory receiving the package file.
        backend: Packaging backend.
        maintainer: Default Maintainer field.
        architecture: Default Architecture field.
        interrupt: Cancellation flag.

    Returns:
        PackageArtifact describing the package file.

    Raises:
        PackagingError: If metadata is invalid or the backend fails.
        AbortedError: If interrupted.
    """
    interrupt = interrupt or Interrupt()
    name = component.name
    fields = render_control_fields(
        component,
        dependencies,
        maintainer=maintainer,
        architecture=architecture,
    )
    depends = [d.strip() for d in fields["Depends"].split(",")] if "Depends" in fields else []
    fingerprint = compute_package_fingerprint(artifact.fingerprint, fields, backend.name)
    output_path = package_dir / package_filename(fields)
    fingerprint_path = package_dir / FINGERPRINT_FILENAME

    result = PackageArtifact(
        component=name,
        package_name=fields["Package"],
        version=fields["Version"],
        path=output_path,
        depends=depends,
    )

    if _read_fingerprint(fingerprint_path) == fingerprint and output_path.is_file():
        logger.info("[%s] Package %s is up to date", name, output_path.name)
        result.cache_hit = True
        return result

    interrupt.check(name)
    with interrupt.critical():
        fingerprint_path.unlink(missing_ok=True)
        if package_dir.exists():
            shutil.rmtree(package_dir)
        package_dir.mkdir(parents=True)

    package_root = package_dir / "root"
    try:
        stage_package_tree(artifact.stage_dir, package_root, format_control(fields))
        logger.info("[%s] Building package %s", name, output_path.name)
        backend.build(package_root, output_path)
    except MktcbError as e:
        e.component = name
        raise
    finally:
        shutil.rmtree(package_root, ignore_errors=True)

    if not output_path.is_file():
        raise PackagingError(
            f"Backend {backend.name} did not produce {output_path.name}",
            code="backend_failed",
            component=name,
        )

    with interrupt.critical():
        tmp = fingerprint_path.with_suffix(".tmp")
        tmp.write_text(fingerprint + "\n", encoding="utf-8")
        os.replace(tmp, fingerprint_path)

    return result


__all__ = ["package_component"]
