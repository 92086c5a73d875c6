"""Tests for configuration loading."""

from __future__ import annotations

import pytest

from boardstore.config import BoardStoreConfig, load_config


def test_defaults() -> None:
    config = load_config(None)
    assert config == BoardStoreConfig()
    assert config.cache_ttl_s == 180
    assert config.negative_cache_ttl_s == 60
    assert config.update_lock_timeout_ms == 5000
    assert config.scan_budget_s == 180.0


def test_yaml_overrides(tmp_path) -> None:
    path = tmp_path / "boardstore.yaml"
    path.write_text(
        "users_sheet: people\n"
        "scan_chunk_rows: 50\n"
        "lock_document_updates: false\n"
        "admin_emails:\n"
        "  - ' Admin@School.edu '\n"
    )
    config = load_config(str(path))
    assert config.users_sheet == "people"
    assert config.scan_chunk_rows == 50
    assert config.lock_document_updates is False
    assert config.admin_emails == ["admin@school.edu"]


def test_empty_file_gives_defaults(tmp_path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)) == BoardStoreConfig()


def test_unknown_keys_are_rejected(tmp_path) -> None:
    path = tmp_path / "typo.yaml"
    path.write_text("cache_ttl: 10\n")
    with pytest.raises(ValueError, match="cache_ttl"):
        load_config(str(path))


def test_non_mapping_is_rejected(tmp_path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="must contain a mapping"):
        load_config(str(path))
