"""Cooperative interruption.

SIGINT and SIGTERM do not kill the process outright: the first request
sets a flag that pipelines poll at their suspension points, so no
partially built artifact is ever published. Sections that must not be
left half-done (patching a source tree, publishing a fingerprint) run
under ``critical()``. A second request while no critical section is
active escalates to ``KeyboardInterrupt``.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

from mktcb.errors import AbortedError

logger = logging.getLogger(__name__)


class Interrupt:
    """Shared cancellation flag with critical-section tracking."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._critical = 0

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def request(self, reason: str = "interruption requested") -> None:
        """Ask every pipeline to stop at its next suspension point."""
        if not self._event.is_set():
            logger.error("%s, stopping", reason)
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until an interruption is requested or timeout expires."""
        return self._event.wait(timeout)

    def check(self, component: str | None = None) -> None:
        """Raise AbortedError if an interruption was requested.

        Raises:
            AbortedError: If the flag is set.
        """
        if self._event.is_set():
            raise AbortedError("Interrupted", component=component)

    @property
    def in_critical_section(self) -> bool:
        with self._lock:
            return self._critical > 0

    @contextmanager
    def critical(self) -> Iterator[None]:
        """Mark a section that must run to completion once started."""
        with self._lock:
            self._critical += 1
        try:
            yield
        finally:
            with self._lock:
                self._critical -= 1
            if self._event.is_set():
                logger.debug("An interrupt request will now be serviced")

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        if self._event.is_set() and not self.in_critical_section:
            raise KeyboardInterrupt
        self.request(f"{name} received")

    @contextmanager
    def installed(self) -> Iterator[Interrupt]:
        """Route SIGINT/SIGTERM to this instance for the duration.

        Signal handlers can only be installed from the main thread; from
        any other thread this is a no-op.
        """
        if threading.current_thread() is not threading.main_thread():
            yield self
            return
        previous = {
            sig: signal.signal(sig, self._handle_signal)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)


__all__ = ["Interrupt"]
