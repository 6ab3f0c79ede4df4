"""Recipe model module.

This module handles:
- Recipe descriptor schema validation (schema)
- Immutable component model (models)
- Descriptor loading from YAML/JSON (io)
"""

from mktcb.recipes.models import (
    BuildStep,
    Component,
    PackageMetadata,
    SourceDescriptor,
    TarballSource,
    VerbatimSource,
    XzSource,
    component_from_descriptor,
)

__all__ = [
    "BuildStep",
    "Component",
    "PackageMetadata",
    "SourceDescriptor",
    "TarballSource",
    "VerbatimSource",
    "XzSource",
    "component_from_descriptor",
]
