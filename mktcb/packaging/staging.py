"""Package tree staging.

This module handles:
- Copying a component's staged install tree into a package root
- Writing the control file next to the payload
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from mktcb.errors import PackagingError

logger = logging.getLogger(__name__)

CONTROL_DIRNAME = "DEBIAN"
DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


def _validate_path_within_base(path: Path, base: Path) -> None:
    try:
        path.resolve().relative_to(base.resolve())
    except ValueError:
        raise PackagingError(
            f"Path traversal detected: {path} resolves outside {base}",
            code="path_traversal",
        ) from None


def stage_package_tree(
    stage_dir: Path,
    package_root: Path,
    control_text: str,
) -> Path:
    """Assemble the tree handed to the packaging backend.

    The install tree is copied as is (symbolic links preserved), and the
    control file is written to ``DEBIAN/control``. Maintainer scripts the
    build installed under ``DEBIAN/`` are kept.

    Args:
        stage_dir: Staged install tree of the component.
        package_root: Directory to assemble the package in (recreated).
        control_text: Rendered control file.

    Returns:
        Path to the package root.

    Raises:
        PackagingError: If staging fails.
    """
    if not stage_dir.is_dir():
        raise PackagingError(
            f"Staged tree not found: {stage_dir}",
            code="stage_not_found",
        )

    try:
        if package_root.exists():
            shutil.rmtree(package_root)
        shutil.copytree(stage_dir, package_root, symlinks=True)
        package_root.chmod(DEFAULT_DIR_MODE)

        control_dir = package_root / CONTROL_DIRNAME
        _validate_path_within_base(control_dir, package_root)
        control_dir.mkdir(mode=DEFAULT_DIR_MODE, exist_ok=True)
        control_file = control_dir / "control"
        control_file.write_text(control_text, encoding="utf-8")
        control_file.chmod(DEFAULT_FILE_MODE)
    except OSError as e:
        raise PackagingError(
            f"Failed to stage package tree from {stage_dir}: {e}",
            code="stage_error",
        ) from e

    logger.debug("Staged package tree at %s", package_root)
    return package_root


__all__ = ["CONTROL_DIRNAME", "stage_package_tree"]
