"""boardstore init: create the users sheet and its header."""

from __future__ import annotations

import typer

from boardstore.cli import _exitcodes as ec
from boardstore.cli._output import print_error, print_object
from boardstore.cli._store import open_cli_store
from boardstore.errors import SchemaMismatchError


def init_cmd(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be created"),
) -> None:
    """Initialize the users sheet on the selected backend."""
    from boardstore.cli import state

    json_mode = state.json_output

    try:
        store = open_cli_store()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        if dry_run:
            exists = store.sheet in store.io.list_sheets()
            data = {
                "backend_uri": state.backend_uri,
                "sheet": store.sheet,
                "sheet_exists": exists,
                "status": "dry_run",
            }
            print_object(data, json_mode=json_mode)
            return

        created = store.initialize()
        data = {
            "backend_uri": state.backend_uri,
            "sheet": store.sheet,
            "status": "initialized" if created else "already_initialized",
        }
        if json_mode:
            print_object(data, json_mode=True)
        elif created:
            print(f"Initialized: {state.backend_uri} (sheet '{store.sheet}')")
        else:
            print(f"Already initialized: {state.backend_uri} (sheet '{store.sheet}')")
    except SchemaMismatchError as e:
        print_error(str(e))
        raise typer.Exit(ec.SCHEMA_MISMATCH)
    except typer.Exit:
        raise
    except Exception as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    finally:
        store.close()
