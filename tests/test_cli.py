"""Smoke tests for the CLI.

These tests verify CLI behavior without requiring network access or
a native packaging tool.
"""

import json
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeBackend, recipe_data, write_recipe
from typer.testing import CliRunner

from mktcb import __version__
from mktcb.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep log records out of the captured output and paths in tmp."""
    monkeypatch.setenv("MKTCB_LOG_LEVEL", "CRITICAL")
    monkeypatch.setenv("MKTCB_DOWNLOAD_DIR", str(tmp_path / "download"))
    monkeypatch.setenv("MKTCB_BUILD_DIR", str(tmp_path / "build"))
    monkeypatch.setenv("MKTCB_FETCH_BACKOFF", "0")
    monkeypatch.setenv("MKTCB_FETCH_BACKOFF_MAX", "0")


@pytest.fixture
def fake_packager():
    backend = FakeBackend()
    with patch("mktcb.context.get_backend", return_value=backend):
        yield backend


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "trusted computing base" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_build_help(self) -> None:
        """CLI build --help should work."""
        result = runner.invoke(app, ["build", "--help"])
        assert result.exit_code == 0
        assert "--only" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command_shows_all_settings(self) -> None:
        """CLI config should show all configuration sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        for section in ("Paths:", "Operational:", "Concurrency:", "Fetch:", "Packaging:"):
            assert section in result.stdout
        assert "Library directory" in result.stdout
        assert "Parallel components" in result.stdout
        assert "Step timeout" in result.stdout

    def test_config_json_contains_all_fields(self) -> None:
        """CLI config --json should contain all config fields."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        config_data = json.loads(result.stdout)
        for key in (
            "library_dir",
            "download_dir",
            "build_dir",
            "offline",
            "jobs",
            "max_parallel_components",
            "fetch_attempts",
            "step_timeout",
            "packager",
        ):
            assert key in config_data, f"Missing key: {key}"
        assert config_data["log_level"] == "CRITICAL"


class TestCLIGraph:
    """Test CLI graph command."""

    def test_graph_json(self, library: Path) -> None:
        """Components are listed in build order."""
        write_recipe(library, recipe_data("toolchain", package=False, internal_only=True))
        write_recipe(library, recipe_data("kernel", depends=["toolchain"]))

        result = runner.invoke(app, ["graph", "-L", str(library), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [c["name"] for c in data] == ["toolchain", "kernel"]
        assert data[0]["package"] is None
        assert data[1]["depends"] == ["toolchain"]

    def test_graph_cycle_exit_code(self, library: Path) -> None:
        """Resolution errors exit with 2."""
        write_recipe(library, recipe_data("a", depends=["b"]))
        write_recipe(library, recipe_data("b", depends=["a"]))

        result = runner.invoke(app, ["graph", "-L", str(library)])

        assert result.exit_code == 2


class TestCLIBuild:
    """Test CLI build command."""

    def test_build_success(self, library: Path, fake_packager: FakeBackend) -> None:
        """A successful run exits 0 and lists its packages."""
        write_recipe(library, recipe_data("uboot"))

        result = runner.invoke(app, ["build", "-L", str(library), "-j", "1"])

        assert result.exit_code == 0
        assert "Run Results:" in result.stdout
        assert len(fake_packager.calls) == 1

    def test_build_json_report(self, library: Path, fake_packager: FakeBackend) -> None:
        """--json prints the run report."""
        write_recipe(library, recipe_data("toolchain", package=False, internal_only=True))
        write_recipe(
            library,
            recipe_data("kernel", depends=["toolchain"], steps=[{"name": "make", "run": "exit 1"}]),
        )

        result = runner.invoke(app, ["build", "-L", str(library), "--json"])

        assert result.exit_code == 1
        report = json.loads(result.stdout)
        assert report["exit_code"] == 1
        assert report["summary"]["done"] == 1
        assert report["summary"]["failed"] == 1
        kernel = report["components"][1]
        assert kernel["name"] == "kernel"
        assert kernel["code"] == "build_failed"
        assert kernel["phase"] == "build"

    def test_build_json_cause_lines_on_stderr(
        self, library: Path, fake_packager: FakeBackend
    ) -> None:
        """--json keeps stdout parseable and still writes cause lines to stderr."""
        write_recipe(
            library,
            recipe_data(
                "toolchain",
                package=False,
                internal_only=True,
                steps=[{"name": "make", "run": "exit 3"}],
            ),
        )
        write_recipe(library, recipe_data("kernel", depends=["toolchain"]))

        result = runner.invoke(app, ["build", "-L", str(library), "--json"])

        assert result.exit_code == 1
        summary = json.loads(result.stdout)["summary"]
        assert summary["failed"] == 1
        assert summary["skipped"] == 1
        assert "toolchain: build failed (build_failed)" in result.stderr
        assert "kernel: skipped, dependency toolchain failed" in result.stderr

    def test_build_failure_cause_lines_on_stderr(
        self, library: Path, fake_packager: FakeBackend
    ) -> None:
        """Cause lines go to stderr, not into the results table."""
        write_recipe(library, recipe_data("uboot", steps=[{"name": "make", "run": "exit 3"}]))

        result = runner.invoke(app, ["build", "-L", str(library)])

        assert result.exit_code == 1
        assert "Run Results:" in result.stdout
        assert "uboot: build failed (build_failed)" in result.stderr
        assert "uboot: build failed" not in result.stdout

    def test_build_cycle_exit_code(self, library: Path, tmp_path: Path) -> None:
        """A cycle exits 2 without creating the build directory."""
        write_recipe(library, recipe_data("a", depends=["b"]))
        write_recipe(library, recipe_data("b", depends=["a"]))

        result = runner.invoke(app, ["build", "-L", str(library)])

        assert result.exit_code == 2
        assert not (tmp_path / "build").exists()

    def test_build_unknown_component(self, library: Path) -> None:
        """Selecting an unknown component exits 2."""
        write_recipe(library, recipe_data("uboot"))

        result = runner.invoke(app, ["build", "-L", str(library), "--only", "nope"])

        assert result.exit_code == 2

    def test_build_invalid_option(self, library: Path) -> None:
        """Invalid configuration values exit 2."""
        result = runner.invoke(app, ["build", "-L", str(library), "-j", "0"])
        assert result.exit_code == 2


class TestModuleEntryPoint:
    """Test python -m mktcb entry point."""

    def test_module_version(self) -> None:
        """python -m mktcb --version should work."""
        result = subprocess.run(
            [sys.executable, "-m", "mktcb", "--version"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0
        assert __version__ in result.stdout
