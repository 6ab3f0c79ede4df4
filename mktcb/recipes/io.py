"""Recipe descriptor loading.

This module provides helpers for reading recipe descriptors from YAML or
JSON files and turning them into validated Component instances.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from mktcb.errors import MalformedRecipeError
from mktcb.recipes.models import Component, component_from_descriptor

# Accepted descriptor file names, in lookup order
RECIPE_FILENAMES = ("recipe.yaml", "recipe.yml", "recipe.json")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_descriptor(path: Path) -> dict[str, Any]:
    """Load a descriptor file (YAML or JSON) by extension.

    Raises:
        MalformedRecipeError: If the file cannot be read or parsed.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            return load_yaml(path)
        if suffix == ".json":
            return load_json(path)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise MalformedRecipeError(
            f"Parse error in {path}: {e}", component=path.parent.name, path=path
        ) from e
    except (OSError, UnicodeDecodeError, ValueError) as e:
        raise MalformedRecipeError(
            f"Cannot read {path}: {e}", component=path.parent.name, path=path
        ) from e
    raise MalformedRecipeError(
        f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json",
        component=path.parent.name,
        path=path,
    )


def find_recipe_file(component_dir: Path) -> Path:
    """Locate the single recipe descriptor of a component directory.

    Raises:
        MalformedRecipeError: If there is no descriptor or more than one.
    """
    found = [component_dir / n for n in RECIPE_FILENAMES if (component_dir / n).is_file()]
    if not found:
        raise MalformedRecipeError(
            f"No recipe descriptor in {component_dir} "
            f"(expected one of {', '.join(RECIPE_FILENAMES)})",
            component=component_dir.name,
        )
    if len(found) > 1:
        raise MalformedRecipeError(
            f"Ambiguous recipe: {component_dir} holds "
            f"{', '.join(p.name for p in found)}",
            component=component_dir.name,
        )
    return found[0]


def load_recipe(path: Path) -> Component:
    """Load and validate one recipe descriptor.

    Args:
        path: Path to the descriptor file.

    Returns:
        Validated Component; relative paths resolve against the file's
        directory.

    Raises:
        MalformedRecipeError: If the descriptor is unreadable or invalid.
    """
    data = load_descriptor(path)
    return component_from_descriptor(data, recipe_dir=path.parent, recipe_path=path)


def load_component_dir(component_dir: Path) -> Component:
    """Load the component described by a library subdirectory.

    The component name must equal the directory name, and every auxiliary
    file the recipe references must exist inside the directory.

    Raises:
        MalformedRecipeError: If the directory does not hold a valid recipe.
    """
    recipe_path = find_recipe_file(component_dir)
    component = load_recipe(recipe_path)
    if component.name != component_dir.name:
        raise MalformedRecipeError(
            f"Recipe name '{component.name}' does not match its directory "
            f"'{component_dir.name}'",
            component=component_dir.name,
            path=recipe_path,
        )

    referenced: list[Path] = [s.local_path for s in component.sources if s.local_path]
    referenced.extend(component.patches)
    if component.config is not None:
        referenced.append(component.config)
    base = component_dir.resolve()
    for aux in referenced:
        resolved = aux.resolve()
        try:
            resolved.relative_to(base)
        except ValueError:
            raise MalformedRecipeError(
                f"Auxiliary file {aux} resolves outside {component_dir}",
                component=component.name,
                path=recipe_path,
            ) from None
        if not aux.is_file():
            raise MalformedRecipeError(
                f"Auxiliary file not found: {aux}",
                component=component.name,
                path=recipe_path,
            )
    return component


__all__ = [
    "RECIPE_FILENAMES",
    "find_recipe_file",
    "load_component_dir",
    "load_descriptor",
    "load_json",
    "load_recipe",
    "load_yaml",
]
