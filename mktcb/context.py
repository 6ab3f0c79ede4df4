"""Explicit run context.

A RunContext carries everything a component pipeline needs (the three
roots, settings, the shared source cache, the packaging backend and the
cancellation flag) and is handed to every task instead of being reached
through module-level state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import httpx

from mktcb.config import Settings
from mktcb.fetch.service import SourceCache
from mktcb.interrupt import Interrupt
from mktcb.packaging.backend import PackagingBackend, get_backend

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Per-run state shared by all component pipelines.

    Attributes:
        library_root: Root of the recipe library.
        download_root: Root of the download directory.
        build_root: Root of the build directory.
        settings: Effective settings.
        interrupt: Cancellation flag.
        cache: Content-addressed source cache.
        backend: Native packaging backend.
    """

    library_root: Path
    download_root: Path
    build_root: Path
    settings: Settings
    interrupt: Interrupt
    cache: SourceCache
    backend: PackagingBackend

    @property
    def max_workers(self) -> int:
        return self.settings.max_parallel_components

    def component_build_dir(self, name: str) -> Path:
        return self.build_root / name


@contextmanager
def open_context(
    settings: Settings,
    client: httpx.Client | None = None,
    backend: PackagingBackend | None = None,
    interrupt: Interrupt | None = None,
) -> Iterator[RunContext]:
    """Create a RunContext, owning the HTTP client unless one is given.

    Args:
        settings: Effective settings; the roots are resolved to absolute paths.
        client: Optional HTTPX client (not closed on exit if provided).
        backend: Optional packaging backend; defaults to settings.packager.
        interrupt: Optional cancellation flag.

    Yields:
        RunContext instance.
    """
    download_root = settings.download_dir.resolve()
    build_root = settings.build_dir.resolve()
    download_root.mkdir(parents=True, exist_ok=True)
    build_root.mkdir(parents=True, exist_ok=True)

    interrupt = interrupt or Interrupt()
    manage_client = client is None
    http_client = client if client is not None else httpx.Client(follow_redirects=True)

    try:
        cache = SourceCache(
            download_root / ".cache",
            http_client,
            attempts=settings.fetch_attempts,
            backoff=settings.fetch_backoff,
            backoff_max=settings.fetch_backoff_max,
            timeout=settings.download_timeout,
            offline=settings.offline,
            interrupt=interrupt,
        )
        yield RunContext(
            library_root=settings.library_dir.resolve(),
            download_root=download_root,
            build_root=build_root,
            settings=settings,
            interrupt=interrupt,
            cache=cache,
            backend=backend or get_backend(settings.packager),
        )
    finally:
        if manage_client:
            http_client.close()


__all__ = ["RunContext", "open_context"]
