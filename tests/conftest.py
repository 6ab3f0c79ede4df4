"""Shared fixtures for mktcb tests."""

import hashlib
import io
import tarfile
from pathlib import Path
from typing import Any

import pytest
import yaml

from mktcb.config import Settings


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_tarball(files: dict[str, bytes], prefix: str = "") -> bytes:
    """Build an in-memory .tar.gz holding the given files."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name=f"{prefix}{name}")
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def recipe_data(
    name: str,
    version: str = "1.0",
    steps: list[dict[str, Any]] | None = None,
    depends: list[str] | None = None,
    package: bool = True,
    **extra: Any,
) -> dict[str, Any]:
    """Build a minimal valid recipe mapping."""
    data: dict[str, Any] = {
        "name": name,
        "version": version,
        "steps": steps
        or [{"name": "install", "run": f"echo {name} > \"$MKTCB_STAGE_DIR/{name}.txt\""}],
    }
    if depends:
        data["depends"] = depends
    if package:
        data["package"] = {"name": f"{name}-pkg", "description": f"The {name} component"}
    data.update(extra)
    return data


def write_recipe(library: Path, data: dict[str, Any], dirname: str | None = None) -> Path:
    """Write a recipe.yaml into its own directory of a library."""
    component_dir = library / (dirname or data["name"])
    component_dir.mkdir(parents=True, exist_ok=True)
    recipe_path = component_dir / "recipe.yaml"
    recipe_path.write_text(yaml.safe_dump(data, sort_keys=False))
    return recipe_path


class FakeBackend:
    """Packaging backend writing the control file and payload listing."""

    name = "fake"

    def __init__(self) -> None:
        self.calls: list[Path] = []

    def build(self, package_root: Path, output_path: Path) -> Path:
        self.calls.append(output_path)
        control = (package_root / "DEBIAN" / "control").read_text()
        files = sorted(
            p.relative_to(package_root).as_posix()
            for p in package_root.rglob("*")
            if p.is_file() and p.parent.name != "DEBIAN"
        )
        output_path.write_text(control + "\n" + "\n".join(files) + "\n")
        return output_path


@pytest.fixture
def library(tmp_path: Path) -> Path:
    """Empty recipe library directory."""
    path = tmp_path / "library"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, library: Path) -> Settings:
    """Settings rooted in the test's temporary directory."""
    return Settings(
        library_dir=library,
        download_dir=tmp_path / "download",
        build_dir=tmp_path / "build",
        jobs=2,
        max_parallel_components=2,
        fetch_attempts=3,
        fetch_backoff=0,
        fetch_backoff_max=0,
        shutdown_grace=1.0,
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
