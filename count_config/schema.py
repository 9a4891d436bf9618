"""
Configuration schema (``count_config.schema``).

Responsibility
--------------
Frozen dataclass describing every tunable of the count engine.  Instances
are produced by ``count_config.loader`` and consumed by the services layer.

Invariants enforced
-------------------
* Every numeric setting is a positive integer.
* ``store_key`` and ``session_id_prefix`` are non-empty.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, fields

from count_kernel.exceptions import ConfigError


@dataclass(frozen=True)
class CountConfig:
    """Effective settings for one engine instance."""

    store_key: str = "retail_cycle_current_task_v1"
    database_url: str = "sqlite:///cycle_count.db"
    min_identifier_length: int = 5
    reconciliation_concurrency: int = 4
    session_id_prefix: str = "PDD"
    session_id_suffix: str = "0001"
    unknown_item_name: str = "Unknown item"
    unknown_sku: str = "UNKNOWN"
    items_per_minute: int = 3
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for name in ("min_identifier_length", "reconciliation_concurrency", "items_per_minute"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(name, f"must be a positive integer, got {value!r}")
        for name in ("store_key", "session_id_prefix", "database_url"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(name, "must be a non-empty string")

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))

    @property
    def checksum(self) -> str:
        """Deterministic SHA-256 of the effective settings."""
        canonical = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
