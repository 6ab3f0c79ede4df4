"""mktcb - Build and package the Trusted Computing Base.

This package drives declarative component recipes (bootloader, kernel,
hypervisor, toolchains) through fetch, build and packaging, producing
native packages whose dependencies mirror the build graph.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
