"""Configuration for the boardstore record store."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

import yaml


@dataclass
class BoardStoreConfig:
    """Configuration for the record store and its collaborators."""

    users_sheet: str = "users"
    audit_sheet: str = "deletion_log"
    cache_ttl_s: int = 180
    negative_cache_ttl_s: int = 60
    create_lock_timeout_ms: int = 10000
    delete_lock_timeout_ms: int = 10000
    update_lock_timeout_ms: int = 5000
    lock_document_updates: bool = True
    scan_chunk_rows: int = 200
    scan_budget_s: float = 180.0
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 200
    retry_max_delay_ms: int = 2000
    circuit_breaker_threshold: int = 3
    circuit_breaker_open_s: float = 60.0
    max_document_chars: int = 32000
    repair_max_rows: int = 100
    admin_emails: list[str] = field(default_factory=list)
    request_timeout_s: float = 30.0
    s3_region: str | None = None
    s3_endpoint_url: str | None = None
    s3_lock_bucket: str | None = None
    s3_lock_prefix: str = "boardstore/locks"
    s3_lease_ttl_ms: int = 30000

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> BoardStoreConfig:
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        values = dict(data)
        if "admin_emails" in values:
            values["admin_emails"] = [str(e).strip().lower() for e in values["admin_emails"] or []]
        return cls(**values)


def load_config(path: str | None) -> BoardStoreConfig:
    """Load a YAML config file. A missing path yields the defaults."""
    if not path:
        return BoardStoreConfig()
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return BoardStoreConfig.from_mapping(data)
