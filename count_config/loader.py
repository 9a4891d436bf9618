"""
Configuration Loader (``count_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into a ``CountConfig``.  Callers
should go through ``count_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key, wrong type, non-positive number  -> ``ConfigError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from count_config.schema import CountConfig
from count_kernel.exceptions import ConfigError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("<root>", f"expected a mapping, got {type(data).__name__}")
    return data


def parse_config(data: dict[str, Any]) -> CountConfig:
    """Build a CountConfig from a parsed mapping; missing keys take defaults."""
    # Settings may be nested under a top-level "cycle_count" key.
    section = data.get("cycle_count", data)
    if not isinstance(section, dict):
        raise ConfigError("cycle_count", "expected a mapping")

    unknown = set(section) - CountConfig.field_names()
    if unknown:
        raise ConfigError(sorted(unknown)[0], "unknown configuration key")
    return CountConfig(**section)


def load_config(path: Path) -> CountConfig:
    """Load and validate the YAML file at ``path``."""
    return parse_config(load_yaml_file(path))
