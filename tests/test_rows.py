"""Tests for the row adapter."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from boardstore.errors import NotFoundError, SchemaMismatchError
from boardstore.models import RawRow, UserRecord
from boardstore.rows import (
    HEADERS,
    check_header,
    locate,
    locate_all,
    parse_bool,
    raw_rows,
    to_record,
    to_row,
)

from tests.conftest import ALICE_ID, BOB_ID, doc


@pytest.fixture
def rows() -> list[RawRow]:
    return raw_rows(
        [
            [ALICE_ID, "Alice@School.edu ", True, doc(), ""],
            [],
            [BOB_ID, "bob@school.edu", "FALSE", doc(), ""],
            [ALICE_ID, "alice2@school.edu", True, doc(), ""],
        ]
    )


def test_header_must_match_exactly() -> None:
    check_header("users", list(HEADERS))
    with pytest.raises(SchemaMismatchError) as exc:
        check_header("users", ["email", "id", "active", "document", "lastModified"])
    assert exc.value.sheet == "users"
    with pytest.raises(SchemaMismatchError):
        check_header("users", list(HEADERS) + ["extra"])
    with pytest.raises(SchemaMismatchError):
        check_header("users", [])


@pytest.mark.parametrize(
    "cell, expected",
    [
        (True, (True, True)),
        (False, (False, True)),
        ("true", (True, True)),
        ("TRUE", (True, True)),
        ("yes", (True, True)),
        (1, (True, True)),
        ("false", (False, True)),
        (0, (False, True)),
        ("", (True, True)),
        (None, (True, True)),
        ("maybe", (True, False)),
        (7, (True, False)),
    ],
)
def test_parse_bool(cell: object, expected: tuple[bool, bool]) -> None:
    assert parse_bool(cell) == expected


def test_raw_rows_skip_blank_rows_but_keep_numbering(rows: list[RawRow]) -> None:
    assert [r.row_number for r in rows] == [2, 4, 5]


def test_locate_by_id_returns_first_match(rows: list[RawRow]) -> None:
    assert locate(rows, "id", ALICE_ID) == 2
    assert locate_all(rows, "id", ALICE_ID) == [2, 5]


def test_locate_by_email_is_case_insensitive(rows: list[RawRow]) -> None:
    assert locate(rows, "email", "  ALICE@school.EDU") == 2


def test_locate_missing_raises_not_found(rows: list[RawRow]) -> None:
    with pytest.raises(NotFoundError) as exc:
        locate(rows, "email", "nobody@school.edu")
    assert exc.value.field == "email"
    assert locate_all(rows, "id", "") == []


def test_to_record_normalizes_cells(rows: list[RawRow]) -> None:
    bob = to_record(rows[1])
    assert bob.id == BOB_ID
    assert bob.active is False
    assert bob.document["schemaVersion"] == 2
    assert bob.last_modified is None


def test_to_record_degrades_corrupt_document() -> None:
    record = to_record(RawRow(2, [ALICE_ID, "a@school.edu", "", "{broken", "not-a-date"]))
    assert record.active is True
    assert record.document["setupStatus"] == "pending"
    assert record.last_modified is None


def test_to_row_round_trip() -> None:
    stamp = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    record = UserRecord(
        id=ALICE_ID,
        email="alice@school.edu",
        active=False,
        document={"schemaVersion": 2, "setupStatus": "done", "isPublished": True},
        last_modified=stamp,
    )
    row = to_row(record, max_document_chars=32000)
    assert row[0] == ALICE_ID
    assert row[4] == "2026-03-01T12:30:00+00:00"
    decoded = to_record(RawRow(2, row))
    assert decoded.active is False
    assert decoded.last_modified == stamp
    assert decoded.document["setupStatus"] == "done"
