"""Native packaging backends.

A backend turns an assembled package tree into a package file. Only the
invocation is owned here; the archive format belongs to the tool.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from mktcb.errors import PackagingError

logger = logging.getLogger(__name__)

# Timeout for a single backend invocation (seconds)
BACKEND_TIMEOUT = 1800


class PackagingBackend(Protocol):
    """Interface of a packaging backend."""

    name: str

    def build(self, package_root: Path, output_path: Path) -> Path:
        """Build a package file from an assembled tree."""
        ...


class DpkgDebBackend:
    """Builds Debian packages with ``dpkg-deb``."""

    name = "dpkg-deb"

    def __init__(self, executable: str = "dpkg-deb", timeout: int = BACKEND_TIMEOUT) -> None:
        self.executable = executable
        self.timeout = timeout

    def compose_command(self, package_root: Path, output_path: Path) -> list[str]:
        return [
            self.executable,
            "--root-owner-group",
            "--build",
            str(package_root),
            str(output_path),
        ]

    def build(self, package_root: Path, output_path: Path) -> Path:
        """Run ``dpkg-deb --build``.

        Raises:
            PackagingError: If the tool is missing or fails (codes
                ``backend_not_found``, ``backend_timeout``, ``backend_failed``).
        """
        if shutil.which(self.executable) is None:
            raise PackagingError(
                f"{self.executable} not found in PATH",
                code="backend_not_found",
            )

        cmd = self.compose_command(package_root, output_path)
        logger.debug("Executing: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
                start_new_session=True,
            )
        except subprocess.TimeoutExpired as e:
            raise PackagingError(
                f"{self.executable} timed out after {self.timeout}s",
                code="backend_timeout",
            ) from e
        except OSError as e:
            raise PackagingError(
                f"Failed to run {self.executable}: {e}",
                code="backend_failed",
            ) from e

        if result.returncode != 0:
            output_path.unlink(missing_ok=True)
            raise PackagingError(
                f"{self.executable} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                code="backend_failed",
            )
        return output_path


BACKENDS: dict[str, type[DpkgDebBackend]] = {
    DpkgDebBackend.name: DpkgDebBackend,
}


def get_backend(name: str) -> PackagingBackend:
    """Instantiate a backend by name.

    Raises:
        PackagingError: If no backend has this name.
    """
    try:
        return BACKENDS[name]()
    except KeyError:
        raise PackagingError(
            f"Unknown packaging backend: {name}",
            code="unknown_backend",
        ) from None


__all__ = ["BACKENDS", "DpkgDebBackend", "PackagingBackend", "get_backend"]
