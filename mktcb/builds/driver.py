"""Build driver.

This module handles:
- Deciding whether a component needs rebuilding (fingerprint comparison)
- Preparing the isolated workspace and exposing dependency outputs
- Running the build steps and publishing the staged tree

Per-component layout below the build root::

    <name>/fingerprint     fingerprint of the published stage
    <name>/manifest.json   staged files and build inputs
    <name>/stage/          install tree populated by the steps
    <name>/work/           working directory of the steps
    <name>/deps/<dep>      link to each dependency's stage
    <name>/logs/           one log file per step

The fingerprint file is removed before anything else is touched and
written last, so an interrupted or failed build never looks valid.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from mktcb.builds.artifacts import (
    discover_artifacts,
    generate_manifest,
    manifest_files,
    read_manifest,
    verify_stage,
    write_manifest,
)
from mktcb.builds.fingerprint import compute_fingerprint, create_build_inputs
from mktcb.builds.runner import StepEnvironment, run_steps
from mktcb.errors import BuildError
from mktcb.fetch.service import SourceTree
from mktcb.interrupt import Interrupt
from mktcb.recipes.models import Component
from mktcb.types import BuildArtifact

logger = logging.getLogger(__name__)

FINGERPRINT_FILENAME = "fingerprint"
MANIFEST_FILENAME = "manifest.json"
CONFIG_FILENAME = ".config"


@dataclass
class BuildLayout:
    """Paths of one component's build directory."""

    root: Path

    @property
    def fingerprint_path(self) -> Path:
        return self.root / FINGERPRINT_FILENAME

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILENAME

    @property
    def stage_dir(self) -> Path:
        return self.root / "stage"

    @property
    def work_dir(self) -> Path:
        return self.root / "work"

    @property
    def deps_dir(self) -> Path:
        return self.root / "deps"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    @property
    def package_dir(self) -> Path:
        return self.root / "package"


def read_stored_fingerprint(layout: BuildLayout) -> str | None:
    try:
        return layout.fingerprint_path.read_text(encoding="utf-8").strip() or None
    except OSError:
        return None


def _write_fingerprint(layout: BuildLayout, fingerprint: str) -> None:
    tmp = layout.fingerprint_path.with_suffix(".tmp")
    tmp.write_text(fingerprint + "\n", encoding="utf-8")
    os.replace(tmp, layout.fingerprint_path)


def find_cached_artifact(
    name: str,
    layout: BuildLayout,
    fingerprint: str,
) -> BuildArtifact | None:
    """Return the published artifact if it matches the fingerprint.

    Args:
        name: Component name.
        layout: Component build layout.
        fingerprint: Freshly computed fingerprint.

    Returns:
        BuildArtifact flagged as a cache hit, or None if a rebuild is needed.
    """
    stored = read_stored_fingerprint(layout)
    if stored != fingerprint:
        if stored is not None:
            logger.info("[%s] Fingerprint changed, rebuilding", name)
        return None

    manifest = read_manifest(layout.manifest_path)
    if manifest is None or manifest.get("fingerprint") != fingerprint:
        logger.info("[%s] Manifest missing or stale, rebuilding", name)
        return None
    if not verify_stage(layout.stage_dir, manifest):
        logger.warning("[%s] Staged tree does not match its manifest, rebuilding", name)
        return None

    return BuildArtifact(
        component=name,
        fingerprint=fingerprint,
        stage_dir=layout.stage_dir,
        manifest_path=layout.manifest_path,
        cache_hit=True,
        files=manifest_files(manifest),
    )


def _reset_dir(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def prepare_workspace(
    component: Component,
    layout: BuildLayout,
    dependencies: Mapping[str, BuildArtifact],
) -> dict[str, Path]:
    """Reset the workspace and expose dependency outputs.

    Returns:
        Dependency name to the path its stage is exposed at.

    Raises:
        BuildError: If the configuration file cannot be copied.
    """
    for path in (layout.work_dir, layout.stage_dir, layout.deps_dir, layout.log_dir):
        _reset_dir(path)

    exposed: dict[str, Path] = {}
    for dep in sorted(component.depends):
        link = layout.deps_dir / dep
        link.symlink_to(dependencies[dep].stage_dir, target_is_directory=True)
        exposed[dep] = link

    if component.config is not None:
        try:
            shutil.copyfile(component.config, layout.work_dir / CONFIG_FILENAME)
        except OSError as e:
            raise BuildError(
                f"Failed to copy configuration {component.config}: {e}",
                code="config_error",
                component=component.name,
            ) from e

    return exposed


def build_component(
    component: Component,
    sources: SourceTree,
    dependencies: Mapping[str, BuildArtifact],
    build_root: Path,
    jobs: int = 1,
    interrupt: Interrupt | None = None,
    step_timeout: float | None = None,
    grace: float = 10.0,
) -> BuildArtifact:
    """Build a component, or reuse its previous output when still valid.

    Args:
        component: Component to build.
        sources: Fetched sources of the component.
        dependencies: Artifacts of the component's dependencies.
        build_root: Root of the build directory.
        jobs: Parallelism hint passed to the steps.
        interrupt: Cancellation flag.
        step_timeout: Timeout of a single step in seconds.
        grace: Seconds a cancelled step is given to exit.

    Returns:
        BuildArtifact of the staged tree.

    Raises:
        BuildError: If a dependency output is missing or a step fails.
        AbortedError: If interrupted.
    """
    interrupt = interrupt or Interrupt()
    name = component.name
    layout = BuildLayout(build_root / name)

    missing = [d for d in component.depends if d not in dependencies]
    if missing:
        raise BuildError(
            f"Outputs of dependencies {', '.join(missing)} are not available",
            code="missing_dependency_output",
            component=name,
        )

    inputs = create_build_inputs(
        component,
        sources.digests,
        {dep: dependencies[dep].fingerprint for dep in component.depends},
    )
    fingerprint = compute_fingerprint(inputs)

    cached = find_cached_artifact(name, layout, fingerprint)
    if cached is not None:
        logger.info("[%s] Up to date (%s)", name, fingerprint[:19])
        return cached

    interrupt.check(name)
    layout.root.mkdir(parents=True, exist_ok=True)
    with interrupt.critical():
        layout.fingerprint_path.unlink(missing_ok=True)
        layout.manifest_path.unlink(missing_ok=True)

    exposed = prepare_workspace(component, layout, dependencies)
    env = StepEnvironment(
        name=name,
        version=component.version,
        source_dir=sources.root,
        build_dir=layout.work_dir,
        stage_dir=layout.stage_dir,
        deps_dir=layout.deps_dir,
        jobs=jobs,
        dependency_dirs=exposed,
        extra_env=component.environment,
    )

    logger.info("[%s] Building %s", name, component.version)
    run_steps(
        component.steps,
        env,
        layout.log_dir,
        timeout=step_timeout,
        interrupt=interrupt,
        grace=grace,
    )

    artifacts = discover_artifacts(layout.stage_dir)
    manifest = generate_manifest(
        name,
        component.version,
        fingerprint,
        artifacts,
        build_inputs=inputs.to_dict(),
    )
    with interrupt.critical():
        write_manifest(manifest, layout.manifest_path)
        _write_fingerprint(layout, fingerprint)

    logger.info("[%s] Built, %d files staged", name, len(artifacts))
    return BuildArtifact(
        component=name,
        fingerprint=fingerprint,
        stage_dir=layout.stage_dir,
        manifest_path=layout.manifest_path,
        files=artifacts,
    )


__all__ = [
    "BuildLayout",
    "build_component",
    "find_cached_artifact",
    "prepare_workspace",
    "read_stored_fingerprint",
]
