"""
count_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``.  Services receive a ``CountConfig``; they never
    read YAML files themselves.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``COUNT_CONFIG_TRACE`` log entry with the source path and checksum.
"""

from __future__ import annotations

from pathlib import Path

from count_config.loader import load_config
from count_config.schema import CountConfig
from count_kernel.logging_config import get_logger

logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> CountConfig:
    """Load the configuration at ``path`` (default: the packaged set).

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file is not valid YAML.
        ConfigError: if a setting fails validation.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = load_config(source)
    logger.info(
        "COUNT_CONFIG_TRACE",
        extra={
            "trace_type": "COUNT_CONFIG_TRACE",
            "source": str(source),
            "checksum": config.checksum,
            "store_key": config.store_key,
        },
    )
    return config


__all__ = ["CountConfig", "DEFAULT_CONFIG_PATH", "get_active_config"]
