"""Configuration settings for mktcb.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_library_dir() -> Path:
    """Return the default recipe library (the working directory)."""
    return Path.cwd()


def _default_download_dir() -> Path:
    """Return the default download directory."""
    return Path.cwd() / "download"


def _default_build_dir() -> Path:
    """Return the default build directory."""
    return Path.cwd() / "build"


def _default_jobs() -> int:
    """Return the default build parallelism (CPU count + 2)."""
    return (os.cpu_count() or 1) + 2


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the MKTCB_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="MKTCB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    library_dir: Path = Field(
        default_factory=_default_library_dir,
        description="Root directory of the recipe library",
    )
    download_dir: Path = Field(
        default_factory=_default_download_dir,
        description="Root directory for downloaded and unpacked sources",
    )
    build_dir: Path = Field(
        default_factory=_default_build_dir,
        description="Root directory for build workspaces and packages",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - only serve network sources from the cache",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    jobs: int = Field(
        default_factory=_default_jobs,
        ge=1,
        description="Parallel jobs handed to build steps",
    )
    max_parallel_components: int = Field(
        default=2,
        ge=1,
        le=64,
        description="Maximum components processed concurrently",
    )

    # Fetch retry policy
    fetch_attempts: int = Field(
        default=4,
        ge=1,
        le=20,
        description="Maximum download attempts per source",
    )
    fetch_backoff: float = Field(
        default=1.0,
        ge=0,
        description="Initial delay between download attempts (seconds)",
    )
    fetch_backoff_max: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for the delay between download attempts",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single source download",
    )
    step_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for a single build step (unbounded if not set)",
    )
    shutdown_grace: float = Field(
        default=10.0,
        ge=0,
        description="Grace period for in-flight steps after an interrupt",
    )

    # Packaging
    packager: Literal["dpkg-deb"] = Field(
        default="dpkg-deb",
        description="Native packaging backend",
    )
    maintainer: str = Field(
        default="mktcb <mktcb@localhost>",
        min_length=1,
        description="Default package maintainer",
    )
    architecture: str = Field(
        default="all",
        min_length=1,
        description="Default package architecture",
    )

    @model_validator(mode="after")
    def validate_backoff(self) -> "Settings":
        """Validate the backoff bounds are consistent."""
        if self.fetch_backoff_max < self.fetch_backoff:
            raise ValueError("fetch_backoff_max must be >= fetch_backoff")
        return self


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
