"""Row adapter: UserRecord <-> positional backend rows."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from boardstore.document import parse_document, serialize_document, upgrade_document
from boardstore.errors import NotFoundError, SchemaMismatchError
from boardstore.models import RawRow, UserRecord, normalize_email

logger = logging.getLogger(__name__)

HEADERS = ("id", "email", "active", "document", "lastModified")
WIDTH = len(HEADERS)

COL_ID = 0
COL_EMAIL = 1
COL_ACTIVE = 2
COL_DOCUMENT = 3
COL_LAST_MODIFIED = 4

KEY_FIELDS = ("id", "email")

_TRUE_MARKERS = frozenset({"true", "1", "yes", "y"})
_FALSE_MARKERS = frozenset({"false", "0", "no", "n"})


def parse_bool(value: Any, default: bool = True) -> tuple[bool, bool]:
    """Normalize a boolean-like cell. Returns ``(value, ok)``.

    Blank cells take the default and are ok; unrecognized markers take the
    default and are not.
    """
    if isinstance(value, bool):
        return value, True
    if value is None:
        return default, True
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value), True
        return default, False
    text = str(value).strip().lower()
    if not text:
        return default, True
    if text in _TRUE_MARKERS:
        return True, True
    if text in _FALSE_MARKERS:
        return False, True
    return default, False


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable lastModified cell %r", value)
        return None


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_header(sheet: str, header: list[Any]) -> None:
    """Reject any header that is not exactly the expected column layout."""
    actual = [str(h).strip() for h in header]
    if actual != list(HEADERS):
        raise SchemaMismatchError(sheet, list(HEADERS), actual)


def cell_key(row: RawRow, field: str) -> str:
    """Key cell of a row, normalized the way lookups compare it."""
    if field == "id":
        return str(row.cell(COL_ID)).strip()
    if field == "email":
        return normalize_email(row.cell(COL_EMAIL))
    raise ValueError(f"Unknown key field '{field}'")


def _normalize_key(field: str, value: str) -> str:
    if field == "email":
        return normalize_email(value)
    return str(value or "").strip()


def locate(rows: list[RawRow], field: str, value: str) -> int:
    """Row number of the row that holds key ``field`` = ``value``.

    Ids resolve to their first row. An email shared by inactive users and
    one active user resolves to the active row, which owns the unique key;
    otherwise to the first match.
    """
    wanted = _normalize_key(field, value)
    matches = [row for row in rows if wanted and cell_key(row, field) == wanted]
    if not matches:
        raise NotFoundError(field, value)
    if field == "email":
        for row in matches:
            if parse_bool(row.cell(COL_ACTIVE))[0]:
                return row.row_number
    return matches[0].row_number


def locate_all(rows: list[RawRow], field: str, value: str) -> list[int]:
    """Every row number whose key ``field`` equals ``value``, ascending."""
    wanted = _normalize_key(field, value)
    if not wanted:
        return []
    return [row.row_number for row in rows if cell_key(row, field) == wanted]


def to_record(row: RawRow) -> UserRecord:
    """Decode a row. Corrupt documents degrade to an upgraded empty document."""
    document, ok = parse_document(row.cell(COL_DOCUMENT))
    if not ok:
        logger.warning("Row %d has an unparseable document; reading it as empty", row.row_number)
    active, _ = parse_bool(row.cell(COL_ACTIVE))
    return UserRecord(
        id=str(row.cell(COL_ID)).strip(),
        email=str(row.cell(COL_EMAIL)).strip(),
        active=active,
        document=upgrade_document(document),
        last_modified=parse_timestamp(row.cell(COL_LAST_MODIFIED)),
    )


def to_row(record: UserRecord, *, max_document_chars: int) -> list[Any]:
    return [
        record.id,
        record.email,
        record.active,
        serialize_document(record.document, max_chars=max_document_chars),
        format_timestamp(record.last_modified),
    ]


def raw_rows(values: list[list[Any]], *, first_row: int = 2) -> list[RawRow]:
    """Wrap a value block read from ``first_row`` onwards, dropping blank rows."""
    out: list[RawRow] = []
    for offset, values_row in enumerate(values):
        if any(v not in ("", None) for v in values_row):
            out.append(RawRow(row_number=first_row + offset, values=list(values_row)))
    return out
