"""Error taxonomy for mktcb.

Every error carries a stable ``code`` for programmatic handling, and,
once known, the name of the component and the pipeline phase it
originated from. Codes are surfaced verbatim in run reports.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

# Error code constants
MALFORMED_RECIPE = "malformed_recipe"
UNRESOLVED_DEPENDENCY = "unresolved_dependency"
DEPENDENCY_CYCLE = "dependency_cycle"
FETCH_ERROR = "fetch_error"
INTEGRITY_ERROR = "integrity_error"
BUILD_ERROR = "build_failed"
PACKAGING_ERROR = "packaging_failed"
ABORTED = "aborted"
DEPENDENCY_FAILED = "dependency_failed"


class MktcbError(Exception):
    """Base class for all mktcb errors."""

    default_code = "mktcb_error"
    default_phase: str | None = None

    def __init__(
        self,
        message: str,
        code: str | None = None,
        component: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.component = component
        self.phase = phase or self.default_phase

    def __str__(self) -> str:
        if self.component:
            return f"[{self.component}] {self.message}"
        return self.message


class ResolutionError(MktcbError):
    """Raised when the recipe library cannot be turned into a build graph."""

    default_code = "resolution_error"
    default_phase = "resolve"


class MalformedRecipeError(ResolutionError):
    """Raised when a recipe is missing required fields or is invalid."""

    default_code = MALFORMED_RECIPE

    def __init__(
        self,
        message: str,
        component: str | None = None,
        path: Path | None = None,
    ) -> None:
        super().__init__(message, component=component)
        self.path = path


class UnresolvedDependencyError(ResolutionError):
    """Raised when a declared dependency names no known component."""

    default_code = UNRESOLVED_DEPENDENCY

    def __init__(self, component: str, missing: str) -> None:
        super().__init__(
            f"depends on '{missing}', which is neither a component of the "
            "library nor declared external",
            component=component,
        )
        self.missing = missing


class DependencyCycleError(ResolutionError):
    """Raised when the dependency graph contains a cycle."""

    default_code = DEPENDENCY_CYCLE

    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = list(cycle)


class FetchError(MktcbError):
    """Raised when a source cannot be retrieved or unpacked.

    ``transient`` marks transport failures worth retrying.
    """

    default_code = FETCH_ERROR
    default_phase = "fetch"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        component: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message, code=code, component=component)
        self.transient = transient


class IntegrityError(MktcbError):
    """Raised when fetched bytes do not match the declared digest."""

    default_code = INTEGRITY_ERROR
    default_phase = "fetch"

    def __init__(
        self,
        location: str,
        expected: str,
        actual: str,
        component: str | None = None,
    ) -> None:
        super().__init__(
            f"Checksum mismatch for {location}: expected {expected}, got {actual}",
            component=component,
        )
        self.location = location
        self.expected = expected
        self.actual = actual


class BuildError(MktcbError):
    """Raised when a build step fails."""

    default_code = BUILD_ERROR
    default_phase = "build"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        component: str | None = None,
        step: str | None = None,
        exit_code: int | None = None,
        log_path: Path | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message, code=code, component=component)
        self.step = step
        self.exit_code = exit_code
        self.log_path = log_path
        self.output = output


class PackagingError(MktcbError):
    """Raised when the packaging backend fails."""

    default_code = PACKAGING_ERROR
    default_phase = "package"


class AbortedError(MktcbError):
    """Raised when a pipeline is interrupted by a cancellation request."""

    default_code = ABORTED


__all__ = [
    "ABORTED",
    "BUILD_ERROR",
    "DEPENDENCY_CYCLE",
    "DEPENDENCY_FAILED",
    "FETCH_ERROR",
    "INTEGRITY_ERROR",
    "MALFORMED_RECIPE",
    "PACKAGING_ERROR",
    "UNRESOLVED_DEPENDENCY",
    "AbortedError",
    "BuildError",
    "DependencyCycleError",
    "FetchError",
    "IntegrityError",
    "MalformedRecipeError",
    "MktcbError",
    "PackagingError",
    "ResolutionError",
    "UnresolvedDependencyError",
]
