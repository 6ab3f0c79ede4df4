"""Packaging module.

This module handles:
- Control metadata rendering and dependency translation (control)
- Package tree assembly (staging)
- Native packaging backends (backend)
- Incremental package production (service)
"""

from mktcb.packaging.backend import DpkgDebBackend, PackagingBackend, get_backend
from mktcb.packaging.service import package_component

__all__ = ["DpkgDebBackend", "PackagingBackend", "get_backend", "package_component"]
