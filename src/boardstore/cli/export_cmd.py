"""boardstore export: write users as JSONL."""

from __future__ import annotations

import json
import os
from typing import Optional

import typer

from boardstore.cli import _exitcodes as ec
from boardstore.cli._output import print_error, print_object, record_to_dict
from boardstore.cli._store import open_cli_store


def export_cmd(
    output: str = typer.Option(..., "--output", help="Output JSONL file path"),
    active_only: bool = typer.Option(False, "--active-only", help="Skip inactive users"),
    budget_s: Optional[float] = typer.Option(
        None, "--budget-s", help="Scan budget in seconds (default from config)"
    ),
) -> None:
    """Export every user record, one JSON object per line.

    Exits 9 when the scan budget runs out; the file then holds the rows
    read before the cutoff.
    """
    from boardstore.cli import state

    try:
        store = open_cli_store()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        listing = store.get_all_users(active_only=active_only, budget_s=budget_s)
        directory = os.path.dirname(os.path.abspath(output))
        os.makedirs(directory, exist_ok=True)
        with open(output, "w", encoding="utf-8") as f:
            for user in listing.users:
                f.write(json.dumps(record_to_dict(user), ensure_ascii=False, default=str) + "\n")

        data = {
            "output": output,
            "users": len(listing.users),
            "processed_rows": listing.processed_rows,
            "total_rows": listing.total_rows,
            "truncated": listing.truncated,
        }
        if state.json_output:
            print_object(data, json_mode=True)
        else:
            print(f"Exported {len(listing.users)} user(s) to {output}")
            if listing.truncated:
                print(
                    f"Warning: scan truncated after {listing.processed_rows}"
                    f" of {listing.total_rows} rows"
                )
    except Exception as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    finally:
        store.close()

    if listing.truncated:
        raise typer.Exit(ec.PARTIAL_RESULT)
