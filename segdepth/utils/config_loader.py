"""
YAML configuration for the engine.

Config files are plain YAML mappings. A string value of the form
``"!include other.yaml"`` is replaced by the parsed contents of that file,
resolved relative to the including file. Overrides are deep-merged on top,
so ``{"engine": {"top_k": 50}}`` changes one key of the ``engine`` section
and keeps the rest.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

INCLUDE_PREFIX = "!include "


def read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Parse one YAML file into a mapping, expanding includes.

    Args:
        path: Config file path.

    Returns:
        Parsed mapping ({} for an empty file).

    Raises:
        FileNotFoundError: If the file (or an included file) doesn't exist.
        ValueError: If the top level is not a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must hold a mapping, got {type(data).__name__}")

    return _expand_includes(data, path.parent)


def _expand_includes(node: Any, base_dir: Path) -> Any:
    if isinstance(node, dict):
        return {key: _expand_includes(value, base_dir) for key, value in node.items()}
    if isinstance(node, str) and node.startswith(INCLUDE_PREFIX):
        included = base_dir / node[len(INCLUDE_PREFIX):].strip()
        if included.suffix in (".yaml", ".yml"):
            return read_yaml(included)
        raise ValueError(f"Only YAML files can be included, got {included}")
    return node


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge two mappings; values from override win.

    Nested mappings are merged key by key, anything else is replaced.
    Neither input is modified.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_configs(current, value)
        else:
            merged[key] = value
    return merged


def load_config(
    config_path: Union[str, Path],
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Load a config file and apply overrides.

    Args:
        config_path: Path to the YAML file.
        overrides: Mapping deep-merged over the file contents.

    Returns:
        Configuration dictionary.
    """
    config = read_yaml(config_path)
    if overrides:
        config = merge_configs(config, overrides)
    return config


def get_nested(
    config: Dict[str, Any],
    key: str,
    default: Any = None,
) -> Any:
    """
    Get a nested value using dot notation.

    Args:
        config: Configuration dictionary.
        key: Dot-separated key (e.g. 'engine.nms_threshold').
        default: Returned when any part of the path is missing.
    """
    value: Any = config
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value
