"""boardstore info: show backend status and user counts."""

from __future__ import annotations

from typing import Any

import typer

from boardstore.cli import _exitcodes as ec
from boardstore.cli._output import print_error, print_object
from boardstore.cli._store import open_cli_store
from boardstore.document import DOCUMENT_VERSION


def info_cmd(
    stats: bool = typer.Option(False, "--stats", help="Count users by state"),
) -> None:
    """Show backend status and high-level metadata."""
    from boardstore.cli import state

    json_mode = state.json_output

    try:
        store = open_cli_store()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        backend = store.backend.backend_info()
        sheets = store.io.list_sheets()
        data: dict[str, Any] = {
            **backend,
            "users_sheet": store.sheet,
            "initialized": store.sheet in sheets,
            "audit_sheet_present": store.config.audit_sheet in sheets,
            "document_version": DOCUMENT_VERSION,
        }

        if stats and data["initialized"]:
            listing = store.get_all_users()
            data["users_total"] = len(listing.users)
            data["users_active"] = sum(1 for u in listing.users if u.active)
            data["users_published"] = sum(1 for u in listing.users if u.is_published)
            data["scan_truncated"] = listing.truncated

        if json_mode:
            print_object(data, json_mode=True)
        else:
            print(f"Backend: {data.get('backend', 'unknown')}")
            if "path" in data:
                print(f"File: {data['path']}")
            if "spreadsheet_id" in data:
                print(f"Spreadsheet: {data['spreadsheet_id']}")
            print(f"Users sheet: {store.sheet} ({'present' if data['initialized'] else 'missing'})")
            print(f"Audit sheet: {'present' if data['audit_sheet_present'] else 'not created yet'}")
            print(f"Document version: {DOCUMENT_VERSION}")
            if "users_total" in data:
                print("\nUsers:")
                print(f"  total: {data['users_total']}")
                print(f"  active: {data['users_active']}")
                print(f"  published: {data['users_published']}")
                if data["scan_truncated"]:
                    print("  (scan truncated; counts are partial)")
    except Exception as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    finally:
        store.close()
