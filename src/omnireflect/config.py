"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing, just plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StoreConfig:
    """Persistence substrate settings."""

    redis_url: str = "redis://localhost:6379"
    namespace: str = "omnireflect"
    # Keep an id -> shard-key index next to the fact shards.
    use_shard_index: bool = True


@dataclass(frozen=True)
class IngestionConfig:
    """How author payloads are screened before reaching the inbox."""

    # Refuse the whole payload when any proposal is invalid.
    strict: bool = False
    # Refuse memory adds whose content already exists as a fact.
    reject_known_facts: bool = True


@dataclass(frozen=True)
class MaintenanceConfig:
    """Thresholds for the offline maintenance sweep."""

    duplicate_threshold: float = 0.9


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "omnireflect_audit.jsonl"
    enabled: bool = True
