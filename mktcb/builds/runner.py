"""Build step runner.

This module handles:
- Expanding step placeholders and composing the step environment
- Executing steps with subprocess in their own process group
- Capturing stdout/stderr to per-step log files
- Enforcing step timeouts and honoring cancellation requests
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import signal
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from mktcb.errors import AbortedError, BuildError
from mktcb.interrupt import Interrupt
from mktcb.recipes.models import BuildStep

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(
    r"\{(source_dir|build_dir|stage_dir|deps_dir|jobs|name|version)\}"
)

# How often a running step is checked for cancellation (seconds)
POLL_INTERVAL = 0.1

# Lines of output attached to a BuildError
LOG_TAIL_LINES = 20


@dataclass
class StepEnvironment:
    """Paths and variables a build step runs with.

    Attributes:
        name: Component name.
        version: Component version.
        source_dir: Unpacked (and patched) sources.
        build_dir: Working directory of the build.
        stage_dir: Install tree the steps populate.
        deps_dir: Directory exposing dependency install trees.
        jobs: Parallelism hint.
        dependency_dirs: Dependency name to its exposed install tree.
        extra_env: Variables declared by the recipe.
    """

    name: str
    version: str
    source_dir: Path
    build_dir: Path
    stage_dir: Path
    deps_dir: Path
    jobs: int = 1
    dependency_dirs: dict[str, Path] = field(default_factory=dict)
    extra_env: dict[str, str] = field(default_factory=dict)

    def placeholders(self) -> dict[str, str]:
        return {
            "source_dir": str(self.source_dir),
            "build_dir": str(self.build_dir),
            "stage_dir": str(self.stage_dir),
            "deps_dir": str(self.deps_dir),
            "jobs": str(self.jobs),
            "name": self.name,
            "version": self.version,
        }

    def expand(self, text: str) -> str:
        """Replace known ``{placeholder}`` tokens, leaving anything else as is."""
        values = self.placeholders()
        return PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], text)

    def environment(self, base: dict[str, str] | None = None) -> dict[str, str]:
        """Compose the process environment for a step.

        Args:
            base: Base environment (defaults to os.environ).

        Returns:
            Environment dictionary.
        """
        env = dict(os.environ if base is None else base)
        env.update({k: self.expand(v) for k, v in self.extra_env.items()})
        env.update(
            {
                "MKTCB_NAME": self.name,
                "MKTCB_VERSION": self.version,
                "MKTCB_SOURCE_DIR": str(self.source_dir),
                "MKTCB_BUILD_DIR": str(self.build_dir),
                "MKTCB_STAGE_DIR": str(self.stage_dir),
                "MKTCB_DEPS_DIR": str(self.deps_dir),
                "MKTCB_JOBS": str(self.jobs),
            }
        )
        for dep, path in self.dependency_dirs.items():
            env[dependency_env_name(dep)] = str(path)
        return env


@dataclass
class StepResult:
    """Result of a step execution.

    Attributes:
        step: Step name.
        exit_code: Process exit code.
        log_path: Path to the step log file.
        command: The command that was executed.
        started_at: Step start time.
        finished_at: Step finish time.
    """

    step: str
    exit_code: int
    log_path: Path
    command: str
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def dependency_env_name(name: str) -> str:
    """Environment variable exposing a dependency's install tree."""
    return "MKTCB_DEP_" + re.sub(r"[^A-Z0-9]", "_", name.upper()) + "_DIR"


def compose_command(step: BuildStep, env: StepEnvironment) -> list[str]:
    """Compose the argv of a step.

    String steps run through ``sh -e -c``; list steps run directly.

    Args:
        step: Step to run.
        env: Step environment used for placeholder expansion.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    if isinstance(step.run, str):
        return ["sh", "-e", "-c", env.expand(step.run)]
    return [env.expand(arg) for arg in step.run]


def step_log_name(index: int, step: BuildStep) -> str:
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", step.name)
    return f"{index:02d}-{safe}.log"


def log_tail(log_path: Path, lines: int = LOG_TAIL_LINES) -> str:
    """Return the last lines of a log file (empty if unreadable)."""
    try:
        content = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    body = [line for line in content.splitlines() if not line.startswith("# ")]
    return "\n".join(body[-lines:])


def _signal_group(proc: subprocess.Popen[bytes], sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def terminate_process(proc: subprocess.Popen[bytes], grace: float) -> int:
    """Terminate a step's process group, killing it after a grace period.

    Returns:
        The process exit code.
    """
    _signal_group(proc, signal.SIGTERM)
    try:
        return proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d ignored SIGTERM for %.1fs, killing it", proc.pid, grace)
        _signal_group(proc, signal.SIGKILL)
        return proc.wait()


def run_step(
    step: BuildStep,
    env: StepEnvironment,
    log_path: Path,
    timeout: float | None = None,
    interrupt: Interrupt | None = None,
    grace: float = 10.0,
) -> StepResult:
    """Execute one build step.

    Args:
        step: Step to run.
        env: Step environment.
        log_path: Log file receiving the step's stdout and stderr.
        timeout: Step timeout in seconds (None = no timeout).
        interrupt: Cancellation flag polled while the step runs.
        grace: Seconds given to the step to exit once cancelled.

    Returns:
        StepResult with execution details.

    Raises:
        BuildError: If the step cannot be started or times out (codes
            ``execution_error``, ``invalid_cwd``, ``build_timeout``).
        AbortedError: If interrupted while running.
    """
    cmd = compose_command(step, env)
    cmd_str = shlex.join(cmd)
    cwd = env.build_dir
    if step.cwd:
        cwd = env.build_dir / env.expand(step.cwd)
    if not cwd.is_dir():
        raise BuildError(
            f"Working directory of step '{step.name}' does not exist: {cwd}",
            code="invalid_cwd",
            component=env.name,
            step=step.name,
        )

    logger.info("[%s] Running step %s", env.name, step.name)
    logger.debug("[%s] %s (cwd: %s)", env.name, cmd_str, cwd)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = datetime.now(timezone.utc)
    deadline = None if timeout is None else started_at.timestamp() + timeout

    with log_path.open("w") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {cwd}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=env.environment(),
                start_new_session=True,
            )
        except OSError as e:
            raise BuildError(
                f"Failed to execute step '{step.name}': {e}",
                code="execution_error",
                component=env.name,
                step=step.name,
                log_path=log_path,
            ) from e

        while True:
            try:
                exit_code = proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pass

            if interrupt is not None and interrupt.requested:
                exit_code = terminate_process(proc, grace)
                log_file.write(f"\n# INTERRUPTED (exit code {exit_code})\n")
                raise AbortedError(
                    f"Step '{step.name}' interrupted",
                    component=env.name,
                    phase="build",
                )

            if deadline is not None and datetime.now(timezone.utc).timestamp() > deadline:
                exit_code = terminate_process(proc, grace)
                log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
                logger.error("[%s] Step %s timed out. See log: %s", env.name, step.name, log_path)
                raise BuildError(
                    f"Step '{step.name}' timed out after {timeout} seconds",
                    code="build_timeout",
                    component=env.name,
                    step=step.name,
                    exit_code=exit_code,
                    log_path=log_path,
                    output=log_tail(log_path),
                )

        finished_at = datetime.now(timezone.utc)
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return StepResult(
        step=step.name,
        exit_code=exit_code,
        log_path=log_path,
        command=cmd_str,
        started_at=started_at,
        finished_at=finished_at,
    )


def run_steps(
    steps: Sequence[BuildStep],
    env: StepEnvironment,
    log_dir: Path,
    timeout: float | None = None,
    interrupt: Interrupt | None = None,
    grace: float = 10.0,
) -> list[StepResult]:
    """Execute build steps in order, stopping at the first failure.

    Steps are never retried: they may have side effects.

    Returns:
        Results of every step, all successful.

    Raises:
        BuildError: Naming the failing step, with the tail of its output.
    """
    results: list[StepResult] = []
    for index, step in enumerate(steps, start=1):
        if interrupt is not None and interrupt.requested:
            raise AbortedError(
                f"Interrupted before step '{step.name}'",
                component=env.name,
                phase="build",
            )
        log_path = log_dir / step_log_name(index, step)
        result = run_step(step, env, log_path, timeout=timeout, interrupt=interrupt, grace=grace)
        if not result.success:
            logger.error(
                "[%s] Step %s failed with exit code %d. See log: %s",
                env.name,
                step.name,
                result.exit_code,
                log_path,
            )
            raise BuildError(
                f"Step '{step.name}' failed with exit code {result.exit_code}",
                component=env.name,
                step=step.name,
                exit_code=result.exit_code,
                log_path=log_path,
                output=log_tail(log_path),
            )
        results.append(result)
    return results


__all__ = [
    "StepEnvironment",
    "StepResult",
    "compose_command",
    "dependency_env_name",
    "log_tail",
    "run_step",
    "run_steps",
    "terminate_process",
]
