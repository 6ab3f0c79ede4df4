"""Fetch service module.

This module provides the high-level fetch API:
- SourceCache: content-addressed download cache shared by a run
- fetch_sources(): retrieve, verify and unpack all sources of a component

Download cache layout (below the download root)::

    .cache/sha256/<digest>/blob         verified source bytes
    .cache/locks/<digest>.lock          per-digest lock files
    <component>/src/                    unpacked (and patched) sources
    <component>/sources.json            stamp describing what src/ holds
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from mktcb.errors import FetchError, IntegrityError, MktcbError
from mktcb.fetch.download import compute_file_sha256, download_with_retry
from mktcb.fetch.unpack import (
    apply_patch,
    copy_verbatim,
    decompress_xz,
    extract_archive,
    strip_xz_suffix,
)
from mktcb.interrupt import Interrupt
from mktcb.recipes.models import (
    Component,
    SourceDescriptor,
    TarballSource,
    VerbatimSource,
    XzSource,
)
from mktcb.types import FetchedSource

logger = logging.getLogger(__name__)

BLOB_FILENAME = "blob"
STAMP_FILENAME = "sources.json"
STAMP_VERSION = 1


@contextmanager
def source_lock(lock_dir: Path, digest: str) -> Iterator[None]:
    """Acquire an exclusive file lock for a source digest.

    Keeps separate processes sharing a download root from racing on the
    same cache entry.

    Args:
        lock_dir: Directory for lock files.
        digest: Source digest to lock on.

    Yields:
        None when lock is acquired.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"{digest[:64]}.lock"

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        logger.debug("Source lock acquired for %s", digest[:16])
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


class SourceCache:
    """Content-addressed cache of verified source bytes.

    Entries are keyed by their SHA-256 digest, so components sharing a
    source share one entry, retrieved and verified at most once per run.
    """

    def __init__(
        self,
        root: Path,
        client: httpx.Client,
        attempts: int = 4,
        backoff: float = 1.0,
        backoff_max: float = 30.0,
        timeout: float = 3600,
        offline: bool = False,
        interrupt: Interrupt | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.root = root
        self.client = client
        self.attempts = attempts
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.offline = offline
        self.interrupt = interrupt or Interrupt()
        self._sleep = sleep
        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._verified: set[str] = set()
        # Network retrievals performed by this instance, per digest
        self.retrievals: Counter[str] = Counter()

    def entry_path(self, digest: str) -> Path:
        """Location of the verified bytes for a digest, whatever their name."""
        return self.root / "sha256" / digest / BLOB_FILENAME

    def _key_lock(self, digest: str) -> threading.Lock:
        with self._guard:
            return self._key_locks.setdefault(digest, threading.Lock())

    def obtain(self, source: SourceDescriptor, component: str | None = None) -> tuple[Path, bool]:
        """Return the path of verified bytes for a network source.

        Args:
            source: Network source descriptor (digest required).
            component: Owning component, for error reporting.

        Returns:
            Tuple of (path to the cached file, served_from_cache).

        Raises:
            FetchError: If the download fails or offline mode forbids it.
            IntegrityError: If the bytes do not match the digest.
        """
        if source.digest is None:
            raise FetchError(
                f"Network source {source.location} has no digest",
                code="missing_digest",
                component=component,
            )
        digest = source.digest
        path = self.entry_path(digest)

        with self._key_lock(digest), source_lock(self.root / "locks", digest):
            if digest in self._verified and path.is_file():
                return path, True

            if path.is_file():
                actual = compute_file_sha256(path)
                if actual == digest:
                    logger.debug("Cache hit for %s (%s)", source.location, digest[:16])
                    self._verified.add(digest)
                    return path, True
                logger.warning(
                    "Cached copy of %s is corrupt (got %s), downloading again",
                    source.location,
                    actual[:16],
                )
                path.unlink()

            if self.offline:
                raise FetchError(
                    f"{source.location} is not in the download cache (offline mode)",
                    code="offline",
                    component=component,
                )

            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=path.parent, suffix=".tmp", delete=False
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)

            try:
                self.retrievals[digest] += 1
                download_with_retry(
                    self.client,
                    source.location,
                    tmp_path,
                    expected_checksum=digest,
                    attempts=self.attempts,
                    backoff=self.backoff,
                    backoff_max=self.backoff_max,
                    timeout=self.timeout,
                    should_abort=lambda: self.interrupt.requested,
                    sleep=self._sleep,
                )
                os.replace(tmp_path, path)
            except MktcbError as e:
                tmp_path.unlink(missing_ok=True)
                if e.component is None:
                    e.component = component
                raise
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise

            self._verified.add(digest)
            return path, False


@dataclass
class SourceTree:
    """Unpacked sources of one component."""

    component: str
    root: Path
    sources: list[FetchedSource] = field(default_factory=list)
    reused: bool = False

    @property
    def digests(self) -> list[str]:
        return [s.digest for s in self.sources]


def component_download_dir(download_root: Path, name: str) -> Path:
    return download_root / name


def _destination(source_root: Path, source: SourceDescriptor) -> Path:
    if isinstance(source, TarballSource):
        return source_root / source.dest if source.dest else source_root
    if isinstance(source, XzSource):
        return source_root / (source.dest or strip_xz_suffix(source.filename))
    return source_root / (source.dest or source.filename)


def _local_digest(source: SourceDescriptor, component: str) -> str:
    if source.local_path is None:
        raise FetchError(
            f"{source.location} is not a local source",
            code="local_source_error",
            component=component,
        )
    try:
        actual = compute_file_sha256(source.local_path)
    except OSError as e:
        raise FetchError(
            f"Cannot read local source {source.local_path}: {e}",
            code="local_source_error",
            component=component,
        ) from e
    if source.digest is not None and actual != source.digest:
        raise IntegrityError(source.location, source.digest, actual, component=component)
    return actual


def _unpack(source: SourceDescriptor, blob: Path, dest: Path) -> None:
    if isinstance(source, TarballSource):
        extract_archive(
            blob, dest, strip_components=source.strip_components, name=source.filename
        )
    elif isinstance(source, XzSource):
        decompress_xz(blob, dest)
    elif isinstance(source, VerbatimSource):
        copy_verbatim(blob, dest, mode=source.mode)
    else:
        copy_verbatim(blob, dest)


def _stamp_data(
    component: Component,
    digests: list[str],
    patch_digests: list[str],
) -> dict[str, Any]:
    return {
        "version": STAMP_VERSION,
        "sources": [
            {**s.snapshot(), "sha256": d} for s, d in zip(component.sources, digests)
        ],
        "patches": [
            {"name": p.name, "sha256": d} for p, d in zip(component.patches, patch_digests)
        ],
    }


def _read_stamp(path: Path) -> dict[str, Any] | None:
    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _write_stamp(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    os.replace(tmp, path)


def fetch_sources(
    component: Component,
    download_root: Path,
    cache: SourceCache,
    interrupt: Interrupt | None = None,
) -> SourceTree:
    """Retrieve, verify and unpack every source of a component.

    Unpacked sources are reused when the stamp left by a previous
    successful fetch matches the current descriptors and digests.
    Otherwise the sources directory is rebuilt from scratch: network
    sources come from the shared cache, local sources from the recipe
    directory, then patches are applied in order.

    Args:
        component: Component to fetch.
        download_root: Root of the download directory.
        cache: Shared source cache.
        interrupt: Cancellation flag.

    Returns:
        SourceTree describing the unpacked sources.

    Raises:
        FetchError: On retrieval, unpack or patch failure.
        IntegrityError: On digest mismatch.
        AbortedError: If interrupted.
    """
    interrupt = interrupt or cache.interrupt
    name = component.name
    work_dir = component_download_dir(download_root, name)
    source_root = work_dir / "src"
    stamp_path = work_dir / STAMP_FILENAME

    # Digests known without network I/O
    known: list[str | None] = [
        _local_digest(s, name) if not s.is_remote else s.digest for s in component.sources
    ]
    patch_digests = [_patch_digest(p, name) for p in component.patches]

    if all(d is not None for d in known):
        expected = _stamp_data(component, [d for d in known if d], patch_digests)
        if source_root.is_dir() and _read_stamp(stamp_path) == expected:
            logger.info("Sources of %s are up to date", name)
            return SourceTree(
                component=name,
                root=source_root,
                sources=[
                    FetchedSource(s.location, d, _destination(source_root, s), True)
                    for s, d in zip(component.sources, expected_digests(expected))
                ],
                reused=True,
            )

    interrupt.check(name)
    stamp_path.unlink(missing_ok=True)
    if source_root.exists():
        shutil.rmtree(source_root)
    source_root.mkdir(parents=True)

    fetched: list[FetchedSource] = []
    for source in component.sources:
        interrupt.check(name)
        if source.local_path is None:
            blob, from_cache = cache.obtain(source, component=name)
            digest = source.digest or ""
        else:
            digest = _local_digest(source, name)
            blob, from_cache = source.local_path, True

        dest = _destination(source_root, source)
        try:
            _unpack(source, blob, dest)
        except FetchError as e:
            e.component = name
            raise
        fetched.append(FetchedSource(source.location, digest, dest, from_cache))

    with interrupt.critical():
        for patch in component.patches:
            logger.info("Applying %s to %s", patch.name, name)
            try:
                apply_patch(source_root, patch)
            except FetchError as e:
                e.component = name
                raise
        _write_stamp(
            stamp_path,
            _stamp_data(component, [f.digest for f in fetched], patch_digests),
        )

    return SourceTree(component=name, root=source_root, sources=fetched)


def expected_digests(stamp: dict[str, Any]) -> list[str]:
    return [entry["sha256"] for entry in stamp["sources"]]


def _patch_digest(path: Path, component: str) -> str:
    try:
        return compute_file_sha256(path)
    except OSError as e:
        raise FetchError(
            f"Cannot read patch {path}: {e}",
            code="patch_failed",
            component=component,
        ) from e


__all__ = [
    "BLOB_FILENAME",
    "STAMP_FILENAME",
    "SourceCache",
    "SourceTree",
    "component_download_dir",
    "fetch_sources",
    "source_lock",
]
