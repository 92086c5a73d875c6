"""Shared test fixtures for boardstore tests."""

from __future__ import annotations

import json
from typing import Any

import pytest

from boardstore.backend import InMemoryBackend
from boardstore.config import BoardStoreConfig
from boardstore.store import UserStore

HEADER = ["id", "email", "active", "document", "lastModified"]

ALICE_ID = "5f1c2b9e-8a47-4d2e-9f11-0a6f7f1d2c01"
BOB_ID = "7d3e4f5a-6b7c-4d8e-9fa0-1b2c3d4e5f02"


def doc(**fields: Any) -> str:
    """Serialized v2 document cell."""
    body: dict[str, Any] = {
        "schemaVersion": 2,
        "setupStatus": "pending",
        "isPublished": False,
        "columnMapping": {},
        "displaySettings": {
            "showNames": False,
            "showReactions": False,
            "theme": "default",
            "pageSize": 20,
        },
    }
    body.update(fields)
    return json.dumps(body)


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def config() -> BoardStoreConfig:
    return BoardStoreConfig(admin_emails=["admin@school.edu"])


@pytest.fixture
def backend() -> InMemoryBackend:
    """In-memory workbook with an empty, initialized users sheet."""
    return InMemoryBackend({"users": [list(HEADER)]})


@pytest.fixture
def seeded_backend() -> InMemoryBackend:
    """Two well-formed users in rows 2 and 3."""
    return InMemoryBackend(
        {
            "users": [
                list(HEADER),
                [ALICE_ID, "alice@school.edu", True, doc(spreadsheetId="sheet-a"), ""],
                [BOB_ID, "bob@school.edu", True, doc(), ""],
            ]
        }
    )


@pytest.fixture
def store(backend: InMemoryBackend, config: BoardStoreConfig) -> UserStore:
    return UserStore(backend, config=config, sleep=lambda _s: None)


@pytest.fixture
def seeded_store(seeded_backend: InMemoryBackend, config: BoardStoreConfig) -> UserStore:
    return UserStore(seeded_backend, config=config, sleep=lambda _s: None)
