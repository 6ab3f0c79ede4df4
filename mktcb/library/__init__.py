"""Library resolution module.

This module handles:
- Discovering component recipes in a library directory
- Building and validating the dependency graph
"""

from mktcb.library.graph import DependencyGraph
from mktcb.library.resolver import resolve_library

__all__ = ["DependencyGraph", "resolve_library"]
