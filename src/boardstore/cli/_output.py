"""Output formatting helpers for the boardstore CLI."""

from __future__ import annotations

import json
import sys
from typing import Any

from boardstore.models import UserRecord


def print_table(headers: list[str], rows: list[list[Any]], *, json_mode: bool = False) -> None:
    """Print rows as an aligned table, or as a JSON array of objects."""
    if json_mode:
        print(json.dumps([dict(zip(headers, row)) for row in rows], indent=2, default=str))
        return
    if not rows:
        return

    str_rows = [[str(v) for v in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in str_rows:
        for i, val in enumerate(row[: len(widths)]):
            widths[i] = max(widths[i], len(val))

    print("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
    print("  ".join("-" * w for w in widths))
    for row in str_rows:
        print("  ".join(val.ljust(widths[i]) for i, val in enumerate(row[: len(widths)])))


def print_object(data: dict[str, Any] | list[Any], *, json_mode: bool = False) -> None:
    """Print a mapping as ``key: value`` lines, or as JSON."""
    if json_mode:
        print(json.dumps(data, indent=2, default=str))
        return
    if isinstance(data, list):
        for item in data:
            print(f"  {item}")
        return
    for k, v in data.items():
        if isinstance(v, (dict, list)):
            v = json.dumps(v, default=str)
        print(f"{k}: {v}")


def record_to_dict(record: UserRecord) -> dict[str, Any]:
    return record.model_dump(mode="json", by_alias=True)


def print_users(users: list[UserRecord], *, json_mode: bool = False) -> None:
    """Summary table of users; JSON mode prints full records, documents included."""
    if json_mode:
        print(json.dumps([record_to_dict(u) for u in users], indent=2, default=str))
        return
    rows = [
        [
            u.id,
            u.email,
            u.active,
            u.is_published,
            u.last_modified.isoformat() if u.last_modified else "",
        ]
        for u in users
    ]
    print_table(["id", "email", "active", "published", "lastModified"], rows, json_mode=json_mode)


def print_error(msg: str) -> None:
    """Print an error message to stderr."""
    print(f"Error: {msg}", file=sys.stderr)
