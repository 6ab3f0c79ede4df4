"""Tests for packaging/control.py module."""

import pytest
from conftest import recipe_data

from mktcb.errors import PackagingError
from mktcb.packaging.control import (
    compute_depends,
    format_control,
    format_description,
    package_dependency,
    package_filename,
    render_control_fields,
)
from mktcb.recipes.models import component_from_descriptor


def make(name, **kwargs):
    return component_from_descriptor(recipe_data(name, **kwargs))


@pytest.fixture
def toolchain():
    return make("toolchain", package=False, internal_only=True)


@pytest.fixture
def uboot():
    return make("uboot", version="2020.04")


@pytest.fixture
def kernel():
    data = recipe_data("kernel", version="5.4.1", depends=["uboot", "toolchain"])
    data["package"]["depends"] = ["libc6 (>= 2.31)"]
    return component_from_descriptor(data)


class TestComputeDepends:
    """Tests for compute_depends and package_dependency."""

    def test_internal_only_has_no_package(self, toolchain):
        """Internal-only components are not package dependencies."""
        assert package_dependency(toolchain) is None

    def test_graph_edges_then_runtime(self, kernel, uboot, toolchain):
        """Graph edges come first, followed by recipe runtime dependencies."""
        assert compute_depends(kernel, [uboot, toolchain]) == [
            "uboot-pkg (= 2020.04)",
            "libc6 (>= 2.31)",
        ]

    def test_duplicates_dropped(self, uboot):
        """A runtime dependency equal to a graph edge appears once."""
        data = recipe_data("image", depends=["uboot"])
        data["package"]["depends"] = ["uboot-pkg (= 2020.04)"]
        image = component_from_descriptor(data)
        assert compute_depends(image, [uboot]) == ["uboot-pkg (= 2020.04)"]


class TestRenderControlFields:
    """Tests for render_control_fields."""

    def test_field_order_and_values(self, kernel, uboot, toolchain):
        """Fields are rendered in control file order with defaults applied."""
        fields = render_control_fields(
            kernel, [uboot, toolchain], maintainer="Dev <dev@example.com>", architecture="armhf"
        )
        assert list(fields) == [
            "Package",
            "Version",
            "Section",
            "Priority",
            "Architecture",
            "Maintainer",
            "Depends",
            "Description",
        ]
        assert fields["Package"] == "kernel-pkg"
        assert fields["Version"] == "5.4.1"
        assert fields["Architecture"] == "armhf"
        assert fields["Maintainer"] == "Dev <dev@example.com>"
        assert fields["Depends"] == "uboot-pkg (= 2020.04), libc6 (>= 2.31)"

    def test_no_depends_field_without_dependencies(self, uboot):
        """Depends is omitted when empty."""
        assert "Depends" not in render_control_fields(uboot)

    def test_recipe_overrides_defaults(self):
        """Recipe architecture and maintainer win over defaults."""
        data = recipe_data("uboot")
        data["package"].update({"architecture": "arm64", "maintainer": "Board <b@x.org>"})
        fields = render_control_fields(component_from_descriptor(data), architecture="all")
        assert fields["Architecture"] == "arm64"
        assert fields["Maintainer"] == "Board <b@x.org>"

    def test_internal_only_rejected(self, toolchain):
        """Components without package metadata cannot be rendered."""
        with pytest.raises(PackagingError) as exc_info:
            render_control_fields(toolchain)
        assert exc_info.value.code == "invalid_metadata"

    def test_invalid_version(self):
        """Versions must start with a digit."""
        with pytest.raises(PackagingError, match="version"):
            render_control_fields(make("uboot", version="v2020.04"))


class TestFormatting:
    """Tests for control file formatting helpers."""

    def test_format_description(self):
        """Extended lines are indented and blank lines become ' .'."""
        text = format_description("Boot loader", "First paragraph.\n\nSecond.")
        assert text == "Boot loader\n First paragraph.\n .\n Second."

    def test_format_control(self):
        fields = {"Package": "uboot-pkg", "Description": "Boot\n more"}
        assert format_control(fields) == "Package: uboot-pkg\nDescription: Boot\n more\n"

    def test_package_filename_drops_epoch(self):
        """The epoch is not part of the file name."""
        fields = {"Package": "uboot-pkg", "Version": "1:2020.04", "Architecture": "armhf"}
        assert package_filename(fields) == "uboot-pkg_2020.04_armhf.deb"
