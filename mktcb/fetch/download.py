"""Source download module.

This module handles:
- Streaming downloads with SHA-256 verification
- Classifying transport failures as transient or fatal
- Bounded retries with exponential backoff
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from mktcb.errors import AbortedError, FetchError, IntegrityError

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads and hashing (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# HTTP statuses worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass
class DownloadResult:
    """Result of a source download."""

    path: Path
    checksum: str
    size_bytes: int
    attempts: int = 1


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    should_abort: Callable[[], bool] | None = None,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.
        should_abort: Polled between chunks; a true result aborts.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        FetchError: If the download fails (``transient`` set when a retry
            may succeed).
        IntegrityError: If checksum verification fails.
        AbortedError: If should_abort returned true.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    if should_abort is not None and should_abort():
                        raise AbortedError(f"Download of {url} interrupted")
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        status = e.response.status_code
        raise FetchError(
            f"HTTP error downloading {url}: {status} {e.response.reason_phrase}",
            code="http_error",
            transient=status in TRANSIENT_STATUS_CODES,
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"Timeout downloading {url}",
            code="timeout",
            transient=True,
        ) from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"Network error downloading {url}: {e}",
            code="network_error",
            transient=True,
        ) from e
    except AbortedError:
        dest_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"Cannot write {dest_path}: {e}",
            code="os_error",
        ) from e

    computed_checksum = sha256.hexdigest()

    if expected_checksum and computed_checksum != expected_checksum.lower():
        # Remove the corrupted file
        dest_path.unlink(missing_ok=True)
        raise IntegrityError(url, expected_checksum, computed_checksum)

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


def backoff_delays(attempts: int, initial: float, maximum: float) -> list[float]:
    """Delays to wait before each retry (one fewer than attempts).

    Args:
        attempts: Total number of attempts.
        initial: Delay before the first retry.
        maximum: Upper bound of any delay.

    Returns:
        List of delays in seconds, doubling up to the bound.
    """
    return [min(initial * (2**i), maximum) for i in range(max(attempts - 1, 0))]


def download_with_retry(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    attempts: int = 4,
    backoff: float = 1.0,
    backoff_max: float = 30.0,
    timeout: float = DOWNLOAD_TIMEOUT,
    should_abort: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DownloadResult:
    """Download a file, retrying transient failures with exponential backoff.

    Integrity failures and non-transient transport errors are raised
    immediately.

    Raises:
        FetchError: When the last attempt fails or the failure is fatal.
        IntegrityError: If the downloaded bytes do not match.
        AbortedError: If the download is interrupted.
    """
    delays = backoff_delays(attempts, backoff, backoff_max)
    for attempt in range(1, attempts + 1):
        try:
            result = download_file(
                client,
                url,
                dest_path,
                expected_checksum=expected_checksum,
                timeout=timeout,
                should_abort=should_abort,
            )
            result.attempts = attempt
            return result
        except FetchError as e:
            if not e.transient or attempt == attempts:
                if e.transient:
                    e.message = f"{e.message} (gave up after {attempt} attempts)"
                raise
            delay = delays[attempt - 1]
            logger.warning(
                "Attempt %d/%d failed for %s: %s; retrying in %.1fs",
                attempt,
                attempts,
                url,
                e.message,
                delay,
            )
            if should_abort is not None and should_abort():
                raise AbortedError(f"Download of {url} interrupted") from e
            sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "TRANSIENT_STATUS_CODES",
    "DownloadResult",
    "backoff_delays",
    "compute_file_sha256",
    "download_file",
    "download_with_retry",
]
