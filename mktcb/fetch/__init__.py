"""Source fetching module.

This module handles:
- Downloading and verifying network sources (download)
- Unpacking archives, verbatim files and xz files (unpack)
- Content-addressed caching and per-component source trees (service)
"""

from mktcb.fetch.download import DownloadResult, download_file, download_with_retry
from mktcb.fetch.service import SourceCache, SourceTree, fetch_sources, source_lock

__all__ = [
    "DownloadResult",
    "SourceCache",
    "SourceTree",
    "download_file",
    "download_with_retry",
    "fetch_sources",
    "source_lock",
]
