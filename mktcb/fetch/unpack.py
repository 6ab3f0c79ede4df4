"""Source unpacking.

This module handles:
- Extracting tar archives (gz, bz2, xz, plain; zstd through system tar)
- Copying verbatim files and decompressing single xz files
- Applying patches to unpacked sources

Every failure here is fatal and never retried: it means a corrupt or
unsupported input rather than a transport problem.
"""

from __future__ import annotations

import logging
import lzma
import shutil
import subprocess
import tarfile
from pathlib import Path, PurePosixPath

from mktcb.errors import FetchError

logger = logging.getLogger(__name__)

# Chunk size for streaming decompression (bytes)
UNPACK_CHUNK_SIZE = 64 * 1024


def _strip_member(name: str, strip_components: int) -> str | None:
    parts = PurePosixPath(name).parts
    if len(parts) <= strip_components:
        return None
    return PurePosixPath(*parts[strip_components:]).as_posix()


def _check_member(member: tarfile.TarInfo, archive_path: Path) -> None:
    member_path = PurePosixPath(member.name)
    if member_path.is_absolute() or ".." in member_path.parts:
        raise FetchError(
            f"Refusing to extract {member.name} from {archive_path.name}: "
            "path traversal detected",
            code="path_traversal",
        )


def extract_archive(
    archive_path: Path,
    dest_dir: Path,
    strip_components: int = 0,
    name: str | None = None,
) -> Path:
    """Extract a tar archive into a destination directory.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory for extraction.
        strip_components: Leading path components dropped from members.
        name: Original file name, used for format detection when the
            archive is stored under another name. Defaults to the name
            of archive_path.

    Returns:
        The destination directory.

    Raises:
        FetchError: If extraction fails (code ``unpack_error``,
            ``path_traversal`` or ``empty_archive``).
    """
    logger.info("Extracting %s to %s", name or archive_path.name, dest_dir)

    dest_dir.mkdir(parents=True, exist_ok=True)

    suffixes = "".join(PurePosixPath(name or archive_path.name).suffixes).lower()
    if suffixes.endswith((".tar.zst", ".tzst")):
        return _extract_with_system_tar(archive_path, dest_dir, strip_components)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            if not members:
                raise FetchError(
                    f"Archive {archive_path} is empty",
                    code="empty_archive",
                )

            selected: list[tarfile.TarInfo] = []
            for member in members:
                _check_member(member, archive_path)
                if strip_components:
                    stripped = _strip_member(member.name, strip_components)
                    if stripped is None:
                        continue
                    member = member.replace(name=stripped, deep=False)
                    if member.islnk() and member.linkname:
                        linkname = _strip_member(member.linkname, strip_components)
                        if linkname is None:
                            continue
                        member = member.replace(linkname=linkname, deep=False)
                selected.append(member)

            tar.extractall(dest_dir, members=selected, filter="data")

    except tarfile.TarError as e:
        raise FetchError(
            f"Failed to extract {archive_path}: {e}",
            code="unpack_error",
        ) from e
    except OSError as e:
        raise FetchError(
            f"OS error extracting {archive_path}: {e}",
            code="unpack_error",
        ) from e

    return dest_dir


def _extract_with_system_tar(
    archive_path: Path,
    dest_dir: Path,
    strip_components: int,
) -> Path:
    # tarfile has no zstd support on every interpreter; list args, no shell
    cmd = ["tar", "-xf", str(archive_path.resolve()), "-C", str(dest_dir.resolve())]
    if strip_components:
        cmd.append(f"--strip-components={strip_components}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise FetchError(
            f"Failed to run tar on {archive_path}: {e}",
            code="unpack_error",
        ) from e
    if result.returncode != 0:
        raise FetchError(
            f"Failed to extract {archive_path}: {result.stderr.strip()}",
            code="unpack_error",
        )
    return dest_dir


def copy_verbatim(source: Path, dest_path: Path, mode: int | None = None) -> Path:
    """Copy a file as is.

    Raises:
        FetchError: If the copy fails.
    """
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest_path)
        if mode is not None:
            dest_path.chmod(mode)
    except OSError as e:
        raise FetchError(
            f"Failed to copy {source} -> {dest_path}: {e}",
            code="unpack_error",
        ) from e
    return dest_path


def decompress_xz(source: Path, dest_path: Path) -> Path:
    """Decompress a single xz file.

    Raises:
        FetchError: If the file is not valid xz data.
    """
    logger.debug("Decompressing %s to %s", source, dest_path)
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        with lzma.open(source, "rb") as src, dest_path.open("wb") as dst:
            while chunk := src.read(UNPACK_CHUNK_SIZE):
                dst.write(chunk)
    except (lzma.LZMAError, EOFError) as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"Failed to decode xz data at {source}: {e}",
            code="unpack_error",
        ) from e
    except OSError as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"OS error decompressing {source}: {e}",
            code="unpack_error",
        ) from e
    return dest_path


def strip_xz_suffix(filename: str) -> str:
    """Name of the decompressed file."""
    return filename[:-3] if filename.lower().endswith(".xz") else filename


def apply_patch(source_dir: Path, patch_path: Path) -> None:
    """Apply a unified diff to a source tree with ``patch -p1``.

    Raises:
        FetchError: If the patch does not apply (code ``patch_failed``).
    """
    logger.debug("Applying patch %s on %s", patch_path, source_dir)
    try:
        result = subprocess.run(
            ["patch", "-s", "-p1", "-i", str(patch_path.resolve())],
            cwd=source_dir,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            check=False,
            start_new_session=True,
        )
    except OSError as e:
        raise FetchError(
            f"Failed to run patch: {e}",
            code="patch_failed",
        ) from e
    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip()
        raise FetchError(
            f"Failed to apply patch {patch_path.name}: {output}",
            code="patch_failed",
        )


__all__ = [
    "apply_patch",
    "copy_verbatim",
    "decompress_xz",
    "extract_archive",
    "strip_xz_suffix",
]
