"""Build orchestration.

This module handles:
- Scheduling component pipelines (fetch, build, package) in dependency order
- Running independent components concurrently on a bounded worker pool
- Propagating failures to transitive dependents without running them
- Aggregating per-component outcomes into one run report

Each component moves through ``pending -> fetching -> building ->
packaging -> done``; ``failed`` is reachable from every non-terminal
state. Only the scheduling thread touches the dependency counters, and a
pipeline only writes to its own outcome.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from mktcb.builds.driver import BuildLayout, build_component
from mktcb.config import Settings
from mktcb.context import RunContext, open_context
from mktcb.errors import ABORTED, DEPENDENCY_FAILED, AbortedError, MktcbError
from mktcb.fetch.service import fetch_sources
from mktcb.interrupt import Interrupt
from mktcb.library.graph import DependencyGraph
from mktcb.library.resolver import resolve_library
from mktcb.packaging.backend import PackagingBackend
from mktcb.packaging.service import package_component
from mktcb.recipes.models import Component
from mktcb.types import BuildArtifact, ComponentState, PackageArtifact, Phase

logger = logging.getLogger(__name__)

# Exit codes of a run
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

# How often the scheduler wakes up to notice interrupts (seconds)
SCHEDULER_TICK = 0.5

_STATE_PHASES = {
    ComponentState.FETCHING: Phase.FETCH,
    ComponentState.BUILDING: Phase.BUILD,
    ComponentState.PACKAGING: Phase.PACKAGE,
}

Listener = Callable[[str, ComponentState], None]


@dataclass
class ComponentOutcome:
    """Outcome of one component's pipeline.

    Attributes:
        name: Component name.
        version: Component version.
        state: Current or final state.
        phase: Phase the failure originated from.
        code: Error code of the failure.
        error: Error message of the failure.
        root_causes: Failed components that caused this one to be skipped.
        sources_from_cache: Whether every source was served without network I/O.
        build: Build output, once built.
        package: Package output, once packaged.
        log_path: Log of the failing step, for build failures.
    """

    name: str
    version: str = ""
    state: ComponentState = ComponentState.PENDING
    phase: str | None = None
    code: str | None = None
    error: str | None = None
    root_causes: list[str] = field(default_factory=list)
    sources_from_cache: bool = False
    build: BuildArtifact | None = None
    package: PackageArtifact | None = None
    log_path: Path | None = None

    @property
    def skipped(self) -> bool:
        return self.code == DEPENDENCY_FAILED

    @property
    def aborted(self) -> bool:
        return self.code == ABORTED

    def cause_line(self) -> str | None:
        """One-line description of why the component failed."""
        if self.state is not ComponentState.FAILED:
            return None
        if self.skipped:
            return f"{self.name}: skipped, dependency {', '.join(self.root_causes)} failed"
        if self.aborted:
            return f"{self.name}: aborted"
        line = f"{self.name}: {self.phase or 'unknown'} failed ({self.code}): {self.error}"
        if self.log_path is not None:
            line += f" [log: {self.log_path}]"
        return line

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "state": self.state.value,
            "phase": self.phase,
            "code": self.code,
            "error": self.error,
            "skipped": self.skipped,
            "root_causes": list(self.root_causes),
            "sources_from_cache": self.sources_from_cache,
            "log_path": str(self.log_path) if self.log_path else None,
            "build": None,
            "package": None,
        }
        if self.build is not None:
            data["build"] = {
                "fingerprint": self.build.fingerprint,
                "stage_dir": str(self.build.stage_dir),
                "manifest": str(self.build.manifest_path),
                "cache_hit": self.build.cache_hit,
                "files": len(self.build.files),
            }
        if self.package is not None:
            data["package"] = {
                "name": self.package.package_name,
                "version": self.package.version,
                "path": str(self.package.path),
                "depends": list(self.package.depends),
                "cache_hit": self.package.cache_hit,
            }
        return data


@dataclass
class RunReport:
    """Consolidated result of an orchestration run."""

    outcomes: dict[str, ComponentOutcome] = field(default_factory=dict)
    interrupted: bool = False

    @property
    def success(self) -> bool:
        return all(o.state is ComponentState.DONE for o in self.outcomes.values())

    def _select(self, predicate: Callable[[ComponentOutcome], bool]) -> list[ComponentOutcome]:
        return [o for o in self.outcomes.values() if predicate(o)]

    @property
    def done(self) -> list[ComponentOutcome]:
        return self._select(lambda o: o.state is ComponentState.DONE)

    @property
    def failed(self) -> list[ComponentOutcome]:
        """Components that failed on their own (root causes)."""
        return self._select(
            lambda o: o.state is ComponentState.FAILED and not o.skipped and not o.aborted
        )

    @property
    def skipped(self) -> list[ComponentOutcome]:
        return self._select(lambda o: o.skipped)

    @property
    def aborted(self) -> list[ComponentOutcome]:
        return self._select(lambda o: o.aborted)

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return EXIT_INTERRUPTED
        return EXIT_SUCCESS if self.success else EXIT_FAILURE

    def cause_lines(self) -> list[str]:
        return [line for o in self.outcomes.values() if (line := o.cause_line())]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "interrupted": self.interrupted,
            "exit_code": self.exit_code,
            "summary": {
                "total": len(self.outcomes),
                "done": len(self.done),
                "failed": len(self.failed),
                "skipped": len(self.skipped),
                "aborted": len(self.aborted),
            },
            "components": [o.to_dict() for o in self.outcomes.values()],
        }


class Orchestrator:
    """Runs every component of a graph through fetch, build and package."""

    def __init__(
        self,
        graph: DependencyGraph,
        context: RunContext,
        listener: Listener | None = None,
    ) -> None:
        self.graph = graph
        self.context = context
        self.listener = listener
        self._lock = threading.Lock()
        self.report = RunReport(
            outcomes={
                c.name: ComponentOutcome(name=c.name, version=c.version)
                for c in graph.topological_order()
            }
        )

    @property
    def interrupt(self) -> Interrupt:
        return self.context.interrupt

    def _transition(self, outcome: ComponentOutcome, state: ComponentState) -> None:
        with self._lock:
            if outcome.state.terminal:
                raise RuntimeError(
                    f"{outcome.name}: invalid transition {outcome.state.value} -> {state.value}"
                )
            outcome.state = state
        logger.debug("[%s] -> %s", outcome.name, state.value)
        if self.listener is not None:
            self.listener(outcome.name, state)

    def _fail(
        self,
        outcome: ComponentOutcome,
        code: str,
        error: str,
        phase: str | None = None,
    ) -> None:
        outcome.code = code
        outcome.error = error
        outcome.phase = phase
        self._transition(outcome, ComponentState.FAILED)

    def _run_pipeline(
        self,
        component: Component,
        dependencies: dict[str, BuildArtifact],
    ) -> ComponentOutcome:
        ctx = self.context
        settings = ctx.settings
        name = component.name
        outcome = self.report.outcomes[name]
        try:
            self.interrupt.check(name)
            self._transition(outcome, ComponentState.FETCHING)
            tree = fetch_sources(component, ctx.download_root, ctx.cache, self.interrupt)
            outcome.sources_from_cache = all(s.from_cache for s in tree.sources)

            self._transition(outcome, ComponentState.BUILDING)
            outcome.build = build_component(
                component,
                tree,
                dependencies,
                ctx.build_root,
                jobs=settings.jobs,
                interrupt=self.interrupt,
                step_timeout=settings.step_timeout,
                grace=settings.shutdown_grace,
            )

            if not component.internal_only:
                self._transition(outcome, ComponentState.PACKAGING)
                outcome.package = package_component(
                    component,
                    outcome.build,
                    self.graph.dependencies(name),
                    BuildLayout(ctx.build_root / name).package_dir,
                    ctx.backend,
                    maintainer=settings.maintainer,
                    architecture=settings.architecture,
                    interrupt=self.interrupt,
                )

            self._transition(outcome, ComponentState.DONE)
        except AbortedError as e:
            logger.warning("[%s] Aborted", name)
            self._fail(outcome, ABORTED, e.message, e.phase or self._phase_of(outcome))
        except MktcbError as e:
            logger.error("%s failed: %s", name, e.message)
            outcome.log_path = getattr(e, "log_path", None)
            self._fail(outcome, e.code, e.message, e.phase or self._phase_of(outcome))
        except Exception as e:
            logger.exception("[%s] Unexpected error", name)
            self._fail(outcome, "internal_error", str(e), self._phase_of(outcome))
        return outcome

    def _dependency_artifacts(self, name: str) -> dict[str, BuildArtifact]:
        """Build artifacts of a component's direct dependencies.

        Raises:
            RuntimeError: If a dependency has no build artifact.
        """
        deps: dict[str, BuildArtifact] = {}
        for dep in self.graph.dependencies(name):
            artifact = self.report.outcomes[dep.name].build
            if artifact is None:
                raise RuntimeError(f"{name}: dependency {dep.name} has no build artifact")
            deps[dep.name] = artifact
        return deps

    @staticmethod
    def _phase_of(outcome: ComponentOutcome) -> str | None:
        phase = _STATE_PHASES.get(outcome.state)
        return phase.value if phase else None

    def _skip_dependents(self, failed: str) -> None:
        for name in sorted(self.graph.transitive_dependents(failed)):
            outcome = self.report.outcomes[name]
            if outcome.state is ComponentState.PENDING:
                outcome.root_causes.append(failed)
                logger.warning("[%s] Skipped, dependency %s failed", name, failed)
                self._fail(outcome, DEPENDENCY_FAILED, f"dependency '{failed}' failed")
            elif outcome.skipped and failed not in outcome.root_causes:
                outcome.root_causes.append(failed)
                outcome.root_causes.sort()

    def run(self) -> RunReport:
        """Run every component, dependencies first.

        Returns:
            RunReport with one outcome per component.
        """
        outcomes = self.report.outcomes
        remaining = {c.name: len(self.graph.dependencies(c.name)) for c in self.graph}
        ready = sorted(name for name, count in remaining.items() if count == 0)
        max_workers = max(1, min(self.context.max_workers, len(self.graph) or 1))

        logger.info(
            "Processing %d components with up to %d in parallel",
            len(self.graph),
            max_workers,
        )

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mktcb") as pool:
            running: dict[Future[ComponentOutcome], str] = {}
            while ready or running:
                while ready and not self.interrupt.requested:
                    name = ready.pop(0)
                    deps = self._dependency_artifacts(name)
                    future = pool.submit(self._run_pipeline, self.graph.get(name), deps)
                    running[future] = name

                if not running:
                    break

                finished, _ = wait(running, timeout=SCHEDULER_TICK, return_when=FIRST_COMPLETED)
                for future in finished:
                    name = running.pop(future)
                    outcome = future.result()
                    if outcome.state is ComponentState.DONE:
                        for dependent in self.graph.dependents(name):
                            remaining[dependent.name] -= 1
                            if (
                                remaining[dependent.name] == 0
                                and outcomes[dependent.name].state is ComponentState.PENDING
                            ):
                                ready.append(dependent.name)
                        ready.sort()
                    else:
                        self._skip_dependents(name)

        if self.interrupt.requested:
            self.report.interrupted = True
            for outcome in outcomes.values():
                if not outcome.state.terminal:
                    self._fail(outcome, ABORTED, "Interrupted before completion")

        for line in self.report.cause_lines():
            logger.debug(line)
        logger.info(
            "Run finished: %d done, %d failed, %d skipped",
            len(self.report.done),
            len(self.report.failed),
            len(self.report.skipped),
        )
        return self.report


def run_library(
    settings: Settings,
    only: Iterable[str] | None = None,
    client: httpx.Client | None = None,
    backend: PackagingBackend | None = None,
    interrupt: Interrupt | None = None,
    listener: Listener | None = None,
) -> RunReport:
    """Resolve the library and run the orchestrator over it.

    Resolution happens before any download or build directory is touched.

    Args:
        settings: Effective settings (roots, parallelism, policies).
        only: Restrict the run to these components and their dependencies.
        client: Optional HTTPX client.
        backend: Optional packaging backend.
        interrupt: Optional cancellation flag.
        listener: Called on every state transition.

    Returns:
        RunReport of the run.

    Raises:
        ResolutionError: If the library cannot be resolved.
        KeyError: If a name given in ``only`` is not a component.
    """
    graph = resolve_library(settings.library_dir)
    if only:
        graph = graph.subgraph(only)

    with open_context(settings, client=client, backend=backend, interrupt=interrupt) as ctx:
        return Orchestrator(graph, ctx, listener=listener).run()


__all__ = [
    "EXIT_FAILURE",
    "EXIT_INTERRUPTED",
    "EXIT_SUCCESS",
    "ComponentOutcome",
    "Orchestrator",
    "RunReport",
    "run_library",
]
