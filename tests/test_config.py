"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from mktcb.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.library_dir == Path.cwd()
        assert settings.download_dir == Path.cwd() / "download"
        assert settings.build_dir == Path.cwd() / "build"
        assert settings.offline is False
        assert settings.log_level == "INFO"
        assert settings.jobs == (os.cpu_count() or 1) + 2
        assert settings.max_parallel_components >= 1
        assert settings.packager == "dpkg-deb"
        assert settings.step_timeout is None

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "MKTCB_OFFLINE": "true",
                "MKTCB_LOG_LEVEL": "DEBUG",
                "MKTCB_MAX_PARALLEL_COMPONENTS": "4",
                "MKTCB_JOBS": "7",
            },
        ):
            settings = Settings()
            assert settings.offline is True
            assert settings.log_level == "DEBUG"
            assert settings.max_parallel_components == 4
            assert settings.jobs == 7

    def test_build_dir_from_env(self) -> None:
        """Build dir should be configurable via env."""
        with patch.dict(os.environ, {"MKTCB_BUILD_DIR": "/tmp/test-build"}):
            settings = Settings()
            assert settings.build_dir == Path("/tmp/test-build")

    def test_init_overrides_env(self) -> None:
        """Explicit values should take precedence over env vars."""
        with patch.dict(os.environ, {"MKTCB_JOBS": "7"}):
            settings = Settings(jobs=3)
            assert settings.jobs == 3

    def test_jobs_must_be_positive(self) -> None:
        """Zero jobs should be rejected."""
        with pytest.raises(ValidationError):
            Settings(jobs=0)

    def test_backoff_bounds_validated(self) -> None:
        """Maximum backoff below the initial backoff should be rejected."""
        with pytest.raises(ValidationError):
            Settings(fetch_backoff=10, fetch_backoff_max=1)

    def test_unknown_packager_rejected(self) -> None:
        """Only known packaging backends are accepted."""
        with pytest.raises(ValidationError):
            Settings(packager="rpmbuild")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "library_dir" in parsed
        assert "download_dir" in parsed
        assert "build_dir" in parsed
        assert "offline" in parsed
        assert "fetch_attempts" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "build_dir" in parsed
