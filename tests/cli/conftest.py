"""Shared fixtures for CLI tests."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from boardstore.cli import app

# Reuse the seed rows from the main conftest
from tests.conftest import ALICE_ID, BOB_ID, HEADER, doc

if TYPE_CHECKING:
    from click.testing import Result


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_book(tmp_path):
    """Path of a workbook file that does not exist yet."""
    return str(tmp_path / "book.json")


@pytest.fixture
def seeded_book(cli_book):
    """A workbook file with alice and bob in the users sheet."""
    rows = [
        list(HEADER),
        [ALICE_ID, "alice@school.edu", True, doc(spreadsheetId="sheet-a"), ""],
        [BOB_ID, "bob@school.edu", True, doc(), ""],
    ]
    with open(cli_book, "w", encoding="utf-8") as f:
        json.dump({"sheets": {"users": rows}}, f)
    return cli_book


@pytest.fixture
def admin_config(tmp_path):
    """Config file naming admin@school.edu as the only administrator."""
    path = tmp_path / "boardstore.yaml"
    path.write_text("admin_emails:\n  - admin@school.edu\n")
    return str(path)


def read_book(path: str) -> dict:
    with open(path, encoding="utf-8") as f:
        return json.load(f)["sheets"]


def invoke(
    runner: CliRunner,
    args: list[str],
    book: str | None = None,
    config: str | None = None,
) -> "Result":
    """Invoke CLI with proper state setup."""
    prefix = []
    if book:
        prefix += ["--backend-uri", f"file://{book}"]
    if config:
        prefix += ["--config", config]
    return runner.invoke(app, prefix + args, catch_exceptions=False)
