"""Pydantic models for recipe descriptor validation.

This module defines the Pydantic models for validating recipe data
loaded from YAML/JSON descriptor files. Sources are a tagged union on
the ``unpack`` field so that each unpack strategy carries exactly the
fields it needs.
"""

import re
from pathlib import PurePosixPath
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Component and package names: Debian package name rules are the strictest
# consumer, so component names follow a compatible pattern.
NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9+.\-]*$")
SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_relative_path(value: str, field_name: str) -> str:
    """Validate a path is relative and stays below its base directory."""
    path = PurePosixPath(value)
    if not value or path.is_absolute():
        raise ValueError(f"{field_name} must be a relative path, got '{value}'")
    if ".." in path.parts:
        raise ValueError(f"{field_name} must not contain '..', got '{value}'")
    return value


class _SourceBase(BaseModel):
    """Fields shared by every source variant.

    Attributes:
        url: Network location (http/https).
        path: Local reference, relative to the recipe directory.
        sha256: Expected SHA-256 digest of the fetched bytes.
        dest: Subdirectory (or file name) inside the sources directory.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str | None = Field(default=None, description="Network location")
    path: str | None = Field(default=None, description="Local auxiliary file")
    sha256: str | None = Field(default=None, description="Expected SHA-256 digest")
    dest: str | None = Field(default=None, description="Destination below sources")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate url uses a supported scheme."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"url must be http:// or https://, got '{v}'")
        return v

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        """Validate and normalize the digest."""
        if v is None:
            return v
        v = v.strip().lower()
        if not SHA256_PATTERN.match(v):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str | None) -> str | None:
        """Validate path is relative to the recipe directory."""
        if v is None:
            return v
        return validate_relative_path(v, "path")

    @field_validator("dest")
    @classmethod
    def validate_dest(cls, v: str | None) -> str | None:
        """Validate dest stays within the sources directory."""
        if v is None:
            return v
        return validate_relative_path(v, "dest")

    @model_validator(mode="after")
    def validate_location(self) -> "_SourceBase":
        """Validate exactly one location is given and network sources are pinned."""
        if (self.url is None) == (self.path is None):
            raise ValueError("exactly one of 'url' or 'path' must be set")
        if self.url is not None and self.sha256 is None:
            raise ValueError(f"network source {self.url} has no sha256 digest")
        return self


class TarSourceSchema(_SourceBase):
    """Source archive unpacked with tar."""

    unpack: Literal["tar"]
    strip_components: int = Field(default=0, ge=0, le=16)


class FileSourceSchema(_SourceBase):
    """Source copied verbatim."""

    unpack: Literal["file"]
    mode: str | None = Field(default=None, description="File mode (e.g. '0755')")

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str | None) -> str | None:
        """Validate mode is a valid octal string."""
        if v is None:
            return v
        if not re.match(r"^0?[0-7]{3,4}$", v):
            raise ValueError(
                f"mode must be a valid octal string (e.g., '0644'), got '{v}'"
            )
        return v


class XzSourceSchema(_SourceBase):
    """Single xz-compressed file, decompressed verbatim."""

    unpack: Literal["xz"]


SourceSchema = Annotated[
    TarSourceSchema | FileSourceSchema | XzSourceSchema,
    Field(discriminator="unpack"),
]


class StepSchema(BaseModel):
    """Schema for one build step.

    Attributes:
        name: Step name used in logs and errors.
        run: Shell command string, or an argv list run without a shell.
        cwd: Working directory relative to the build workspace.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=64)]
    run: str | list[str]
    cwd: str | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate step name is usable as a log file name."""
        if not re.match(r"^[A-Za-z0-9_.\-]+$", v):
            raise ValueError(f"step name must match [A-Za-z0-9_.-]+, got '{v}'")
        return v

    @field_validator("run")
    @classmethod
    def validate_run(cls, v: str | list[str]) -> str | list[str]:
        """Validate the command is not empty."""
        if isinstance(v, str):
            if not v.strip():
                raise ValueError("run must not be empty")
        elif not v or not v[0]:
            raise ValueError("run must not be an empty list")
        return v

    @field_validator("cwd")
    @classmethod
    def validate_cwd(cls, v: str | None) -> str | None:
        """Validate cwd stays within the workspace."""
        if v is None:
            return v
        return validate_relative_path(v, "cwd")


class PackageSchema(BaseModel):
    """Schema for package metadata.

    Attributes:
        name: Native package name.
        description: Synopsis line, optionally followed by extended lines.
        depends: Runtime dependencies passed through verbatim.
        architecture: Package architecture (defaults to settings).
        maintainer: Package maintainer (defaults to settings).
        section: Archive section.
        priority: Package priority.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: str = Field(default="", description="Package description")
    depends: list[str] = Field(default_factory=list)
    architecture: str | None = Field(default=None)
    maintainer: str | None = Field(default=None)
    section: str = Field(default="misc")
    priority: str = Field(default="optional")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate package name matches native naming rules."""
        if not NAME_PATTERN.match(v) or len(v) < 2:
            raise ValueError(f"package name must match {NAME_PATTERN.pattern}, got '{v}'")
        return v

    @field_validator("depends")
    @classmethod
    def validate_depends(cls, v: list[str]) -> list[str]:
        """Validate runtime dependency entries."""
        for item in v:
            if not item or not item.strip() or "\n" in item:
                raise ValueError("depends entries must be non-empty single lines")
        return v


class RecipeSchema(BaseModel):
    """Complete recipe schema for one component.

    Attributes:
        name: Unique component name (equals its library directory).
        version: Version string.
        depends: Names of components this one builds against.
        external: Dependency names satisfied outside the graph.
        internal_only: Build-only component, no package emitted.
        sources: Source descriptors, in unpack order.
        patches: Patch files applied to the unpacked sources.
        config: Configuration file copied into the workspace as .config.
        env: Extra environment for build steps.
        steps: Ordered build steps.
        package: Package metadata (required unless internal_only).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=255)]
    version: Annotated[str, Field(min_length=1, max_length=100)]
    description: str | None = Field(default=None)
    depends: list[str] = Field(default_factory=list)
    external: list[str] = Field(default_factory=list)
    internal_only: bool = Field(default=False)
    sources: list[SourceSchema] = Field(default_factory=list)
    patches: list[str] = Field(default_factory=list)
    config: str | None = Field(default=None)
    env: dict[str, str] = Field(default_factory=dict)
    steps: Annotated[list[StepSchema], Field(min_length=1)]
    package: PackageSchema | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate component name matches the safe pattern."""
        if not NAME_PATTERN.match(v):
            raise ValueError(f"name must match {NAME_PATTERN.pattern}, got '{v}'")
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version has no whitespace."""
        if any(c.isspace() for c in v):
            raise ValueError(f"version must not contain whitespace, got '{v}'")
        return v

    @field_validator("depends", "external")
    @classmethod
    def validate_names(cls, v: list[str]) -> list[str]:
        """Validate dependency names and reject duplicates."""
        for item in v:
            if not NAME_PATTERN.match(item):
                raise ValueError(f"invalid dependency name '{item}'")
        if len(set(v)) != len(v):
            raise ValueError("dependency names must be unique")
        return v

    @field_validator("patches")
    @classmethod
    def validate_patches(cls, v: list[str]) -> list[str]:
        """Validate patch paths are relative to the recipe directory."""
        return [validate_relative_path(p, "patches") for p in v]

    @field_validator("config")
    @classmethod
    def validate_config(cls, v: str | None) -> str | None:
        """Validate config path is relative to the recipe directory."""
        if v is None:
            return v
        return validate_relative_path(v, "config")

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate environment names and keep reserved names free."""
        for key in v:
            if not ENV_NAME_PATTERN.match(key):
                raise ValueError(f"invalid environment variable name '{key}'")
            if key.startswith("MKTCB_"):
                raise ValueError(f"environment variable '{key}' is reserved")
        return v

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: list[StepSchema]) -> list[StepSchema]:
        """Validate step names are unique."""
        names = [step.name for step in v]
        if len(set(names)) != len(names):
            raise ValueError("step names must be unique")
        return v

    @model_validator(mode="after")
    def validate_packaging(self) -> "RecipeSchema":
        """Validate packaged components declare package metadata."""
        if not self.internal_only and self.package is None:
            raise ValueError("'package' is required unless internal_only is true")
        overlap = set(self.depends) & set(self.external)
        if overlap:
            raise ValueError(
                f"names listed in both depends and external: {sorted(overlap)}"
            )
        return self


__all__ = [
    "NAME_PATTERN",
    "FileSourceSchema",
    "PackageSchema",
    "RecipeSchema",
    "SourceSchema",
    "StepSchema",
    "TarSourceSchema",
    "XzSourceSchema",
    "validate_relative_path",
]
