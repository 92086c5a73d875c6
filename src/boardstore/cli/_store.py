"""CLI helpers for config, caller identity and store construction."""

from __future__ import annotations

import dataclasses
import os
from typing import Callable

from boardstore.access import Caller
from boardstore.config import BoardStoreConfig, load_config
from boardstore.diagnostics import Diagnostics
from boardstore.backend import parse_backend_target
from boardstore.locking import (
    LocalLock,
    LockHandle,
    LockManager,
    file_lock_factory,
    s3_lock_factory,
)
from boardstore.store import UserStore, open_store


def config_from_env() -> BoardStoreConfig:
    """Config file named by --config, with ``BOARDSTORE_S3_*`` overrides on top."""
    from boardstore.cli import state

    config = load_config(state.config)
    overrides = {
        "s3_region": os.getenv("BOARDSTORE_S3_REGION"),
        "s3_endpoint_url": os.getenv("BOARDSTORE_S3_ENDPOINT_URL"),
        "s3_lock_bucket": os.getenv("BOARDSTORE_S3_LOCK_BUCKET"),
        "s3_lock_prefix": os.getenv("BOARDSTORE_S3_LOCK_PREFIX"),
    }
    return dataclasses.replace(config, **{k: v for k, v in overrides.items() if v})


def _token_provider() -> Callable[[], str] | None:
    token = os.getenv("BOARDSTORE_SHEETS_TOKEN")
    if not token:
        return None
    return lambda: token


def _lock_factory(config: BoardStoreConfig, uri: str) -> Callable[[str], LockHandle]:
    if config.s3_lock_bucket:
        return s3_lock_factory(config)
    target = parse_backend_target(uri)
    if target.backend == "file" and target.path:
        return file_lock_factory(target.path)
    return LocalLock


def open_cli_store() -> UserStore:
    """Open the store named by the global --backend-uri option."""
    from boardstore.cli import state

    config = config_from_env()
    return open_store(
        state.backend_uri,
        config=config,
        token_provider=_token_provider(),
        locks=LockManager(_lock_factory(config, state.backend_uri)),
    )


def open_diagnostics() -> Diagnostics:
    return Diagnostics(open_cli_store())


def resolve_caller(config: BoardStoreConfig) -> Caller | None:
    """Caller named by --as, or None when the operator runs unrestricted."""
    from boardstore.cli import state

    if not state.caller:
        return None
    return Caller.resolve(state.caller, config.admin_emails)
