"""Package metadata rendering.

This module handles:
- Translating dependency graph edges into package-level dependencies
- Rendering Debian control fields
- Validating package names and versions
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from mktcb.errors import PackagingError
from mktcb.recipes.models import Component

PACKAGE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9+.\-]+$")
VERSION_RE = re.compile(r"^(\d+:)?\d[A-Za-z0-9.+~\-]*$")


def package_dependency(component: Component) -> str | None:
    """Dependency declaration pulling in a component's package.

    Returns:
        ``"<package> (= <version>)"``, or None for internal-only components.
    """
    if component.internal_only or component.package is None:
        return None
    return f"{component.package.name} (= {component.version})"


def compute_depends(component: Component, dependencies: Sequence[Component]) -> list[str]:
    """Compute the Depends list of a component's package.

    Graph edges come first (sorted by component name), then the runtime
    dependencies declared by the recipe, verbatim. Duplicates are dropped.

    Args:
        component: Component being packaged.
        dependencies: The component's direct dependencies.

    Returns:
        Ordered list of dependency declarations.
    """
    depends: list[str] = []
    for dep in sorted(dependencies, key=lambda c: c.name):
        decl = package_dependency(dep)
        if decl is not None:
            depends.append(decl)
    if component.package is not None:
        depends.extend(component.package.depends)
    return list(dict.fromkeys(depends))


def format_description(synopsis: str, extended: str = "") -> str:
    """Format a Description field value (synopsis plus extended lines)."""
    lines = [synopsis.strip() or "no description"]
    for line in extended.strip().splitlines():
        lines.append(" " + line if line.strip() else " .")
    return "\n".join(lines)


def render_control_fields(
    component: Component,
    dependencies: Sequence[Component] = (),
    maintainer: str = "mktcb <mktcb@localhost>",
    architecture: str = "all",
) -> dict[str, str]:
    """Render the control fields of a component's package.

    Recipe values override the given defaults.

    Args:
        component: Component being packaged.
        dependencies: The component's direct dependencies.
        maintainer: Default Maintainer field.
        architecture: Default Architecture field.

    Returns:
        Ordered mapping of control field names to values.

    Raises:
        PackagingError: If the component has no package metadata or the
            package name or version is invalid (code ``invalid_metadata``).
    """
    meta = component.package
    if meta is None:
        raise PackagingError(
            "Component has no package metadata",
            code="invalid_metadata",
            component=component.name,
        )
    if not PACKAGE_NAME_RE.match(meta.name):
        raise PackagingError(
            f"Invalid package name: {meta.name!r}",
            code="invalid_metadata",
            component=component.name,
        )
    if not VERSION_RE.match(component.version):
        raise PackagingError(
            f"Invalid package version: {component.version!r}",
            code="invalid_metadata",
            component=component.name,
        )

    synopsis, _, extended = (meta.description or component.name).partition("\n")
    fields = {
        "Package": meta.name,
        "Version": component.version,
        "Section": meta.section,
        "Priority": meta.priority,
        "Architecture": meta.architecture or architecture,
        "Maintainer": meta.maintainer or maintainer,
    }
    depends = compute_depends(component, dependencies)
    if depends:
        fields["Depends"] = ", ".join(depends)
    fields["Description"] = format_description(synopsis, extended)
    return fields


def format_control(fields: dict[str, str]) -> str:
    """Serialize control fields to the control file format."""
    return "".join(f"{key}: {value}\n" for key, value in fields.items())


def package_filename(fields: dict[str, str]) -> str:
    """Conventional file name ``<package>_<version>_<arch>.deb``.

    The epoch, if any, is not part of the file name.
    """
    version = fields["Version"].split(":", 1)[-1]
    return f"{fields['Package']}_{version}_{fields['Architecture']}.deb"


__all__ = [
    "compute_depends",
    "format_control",
    "format_description",
    "package_dependency",
    "package_filename",
    "render_control_fields",
]
