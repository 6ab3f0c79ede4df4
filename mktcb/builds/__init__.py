"""Build driver module.

This module handles:
- Fingerprint computation (fingerprint)
- Running build steps (runner)
- Staged tree discovery and manifest generation (artifacts)
- Incremental builds in isolated workspaces (driver)
"""

from mktcb.builds.driver import BuildLayout, build_component

__all__ = ["BuildLayout", "build_component"]
