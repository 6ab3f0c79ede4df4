"""Tests for builds/runner.py module.

Steps run real (tiny) shell commands in a temporary workspace.
"""

import threading
import time
from pathlib import Path

import pytest

from mktcb.builds.runner import (
    StepEnvironment,
    compose_command,
    dependency_env_name,
    log_tail,
    run_step,
    run_steps,
    step_log_name,
)
from mktcb.errors import AbortedError, BuildError
from mktcb.interrupt import Interrupt
from mktcb.recipes.models import BuildStep


@pytest.fixture
def step_env(tmp_path: Path) -> StepEnvironment:
    """Step environment with every directory created."""
    dirs = {}
    for key in ("source_dir", "build_dir", "stage_dir", "deps_dir"):
        dirs[key] = tmp_path / key
        dirs[key].mkdir()
    return StepEnvironment(
        name="kernel",
        version="5.4",
        jobs=3,
        dependency_dirs={"cross-gcc": dirs["deps_dir"] / "cross-gcc"},
        extra_env={"ARCH": "arm", "OUT": "{stage_dir}/boot"},
        **dirs,
    )


class TestStepEnvironment:
    """Tests for StepEnvironment."""

    def test_expand_known_placeholders(self, step_env: StepEnvironment):
        """Known placeholders are replaced, others left alone."""
        text = step_env.expand("make -j{jobs} O={build_dir} ${HOME} {unknown}")
        assert text == f"make -j3 O={step_env.build_dir} ${{HOME}} {{unknown}}"

    def test_environment(self, step_env: StepEnvironment):
        """The environment exposes directories, recipe variables and dependencies."""
        env = step_env.environment(base={"PATH": "/usr/bin"})
        assert env["PATH"] == "/usr/bin"
        assert env["MKTCB_NAME"] == "kernel"
        assert env["MKTCB_VERSION"] == "5.4"
        assert env["MKTCB_JOBS"] == "3"
        assert env["MKTCB_STAGE_DIR"] == str(step_env.stage_dir)
        assert env["ARCH"] == "arm"
        assert env["OUT"] == f"{step_env.stage_dir}/boot"
        assert env["MKTCB_DEP_CROSS_GCC_DIR"] == str(step_env.deps_dir / "cross-gcc")

    def test_dependency_env_name(self):
        assert dependency_env_name("u-boot.tools") == "MKTCB_DEP_U_BOOT_TOOLS_DIR"


class TestComposeCommand:
    """Tests for compose_command."""

    def test_shell_step(self, step_env: StepEnvironment):
        """String steps run through sh -e."""
        cmd = compose_command(BuildStep("build", "make -j{jobs}"), step_env)
        assert cmd == ["sh", "-e", "-c", "make -j3"]

    def test_argv_step(self, step_env: StepEnvironment):
        """List steps run directly with placeholders expanded."""
        cmd = compose_command(BuildStep("build", ("make", "-C", "{source_dir}")), step_env)
        assert cmd == ["make", "-C", str(step_env.source_dir)]

    def test_step_log_name(self):
        assert step_log_name(3, BuildStep("install", "true")) == "03-install.log"


class TestRunStep:
    """Tests for run_step."""

    def test_success_writes_log(self, step_env: StepEnvironment, tmp_path: Path):
        """Output and exit information land in the step log."""
        log_path = tmp_path / "logs" / "01-hello.log"
        result = run_step(BuildStep("hello", "echo hello from $MKTCB_NAME"), step_env, log_path)

        assert result.success
        assert result.duration >= 0
        content = log_path.read_text()
        assert "# Command:" in content
        assert "hello from kernel" in content
        assert "# Exit code: 0" in content

    def test_runs_in_build_dir(self, step_env: StepEnvironment, tmp_path: Path):
        """Steps run in the build directory by default."""
        run_step(BuildStep("touch", ("touch", "marker")), step_env, tmp_path / "l.log")
        assert (step_env.build_dir / "marker").exists()

    def test_relative_cwd(self, step_env: StepEnvironment, tmp_path: Path):
        """A step cwd is relative to the build directory."""
        (step_env.build_dir / "sub").mkdir()
        run_step(BuildStep("touch", ("touch", "marker"), cwd="sub"), step_env, tmp_path / "l.log")
        assert (step_env.build_dir / "sub" / "marker").exists()

    def test_missing_cwd(self, step_env: StepEnvironment, tmp_path: Path):
        """A missing working directory is a build error."""
        with pytest.raises(BuildError) as exc_info:
            run_step(BuildStep("x", "true", cwd="nope"), step_env, tmp_path / "l.log")
        assert exc_info.value.code == "invalid_cwd"

    def test_missing_executable(self, step_env: StepEnvironment, tmp_path: Path):
        """A command that cannot start is an execution error."""
        with pytest.raises(BuildError) as exc_info:
            run_step(
                BuildStep("x", ("/nonexistent/mktcb-tool",)), step_env, tmp_path / "l.log"
            )
        assert exc_info.value.code == "execution_error"

    def test_timeout(self, step_env: StepEnvironment, tmp_path: Path):
        """Steps exceeding their timeout are terminated."""
        with pytest.raises(BuildError) as exc_info:
            run_step(
                BuildStep("slow", "sleep 30"),
                step_env,
                tmp_path / "l.log",
                timeout=0.3,
                grace=1.0,
            )
        assert exc_info.value.code == "build_timeout"
        assert "TIMEOUT" in (tmp_path / "l.log").read_text()

    def test_interrupt_terminates_step(self, step_env: StepEnvironment, tmp_path: Path):
        """An interrupt request stops a running step."""
        interrupt = Interrupt()
        timer = threading.Timer(0.3, interrupt.request)
        timer.start()
        started = time.monotonic()
        try:
            with pytest.raises(AbortedError) as exc_info:
                run_step(
                    BuildStep("slow", "sleep 30"),
                    step_env,
                    tmp_path / "l.log",
                    interrupt=interrupt,
                    grace=1.0,
                )
        finally:
            timer.cancel()
        assert exc_info.value.phase == "build"
        assert time.monotonic() - started < 10


class TestRunSteps:
    """Tests for run_steps."""

    def test_runs_in_order(self, step_env: StepEnvironment, tmp_path: Path):
        """Steps run in declaration order with numbered logs."""
        steps = [
            BuildStep("first", "echo 1 >> order"),
            BuildStep("second", "echo 2 >> order"),
        ]
        results = run_steps(steps, step_env, tmp_path / "logs")

        assert [r.step for r in results] == ["first", "second"]
        assert (step_env.build_dir / "order").read_text() == "1\n2\n"
        assert sorted(p.name for p in (tmp_path / "logs").iterdir()) == [
            "01-first.log",
            "02-second.log",
        ]

    def test_failure_stops_and_names_step(self, step_env: StepEnvironment, tmp_path: Path):
        """The first failing step stops the build and is named in the error."""
        steps = [
            BuildStep("configure", "echo configuring"),
            BuildStep("compile", "echo 'cc: error: boom' >&2; exit 3"),
            BuildStep("install", "touch installed"),
        ]
        with pytest.raises(BuildError) as exc_info:
            run_steps(steps, step_env, tmp_path / "logs")

        error = exc_info.value
        assert error.step == "compile"
        assert error.exit_code == 3
        assert error.component == "kernel"
        assert error.log_path == tmp_path / "logs" / "02-compile.log"
        assert "cc: error: boom" in error.output
        assert not (step_env.build_dir / "installed").exists()

    def test_interrupted_before_step(self, step_env: StepEnvironment, tmp_path: Path):
        """No step starts once an interrupt is pending."""
        interrupt = Interrupt()
        interrupt.request()
        with pytest.raises(AbortedError):
            run_steps(
                [BuildStep("install", "touch installed")],
                step_env,
                tmp_path / "logs",
                interrupt=interrupt,
            )
        assert not (step_env.build_dir / "installed").exists()


class TestLogTail:
    """Tests for log_tail."""

    def test_skips_header_lines(self, tmp_path: Path):
        """Header and footer comment lines are not part of the tail."""
        log = tmp_path / "l.log"
        log.write_text("# Command: x\n\nline1\nline2\n# Exit code: 1\n")
        assert log_tail(log, lines=2) == "line1\nline2"

    def test_missing_file(self, tmp_path: Path):
        assert log_tail(tmp_path / "nope.log") == ""
