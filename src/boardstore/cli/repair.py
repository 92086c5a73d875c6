"""boardstore repair: normalization-only repairs, dry run by default."""

from __future__ import annotations

from typing import Optional

import typer

from boardstore.cli import _exitcodes as ec
from boardstore.cli._output import print_error, print_object
from boardstore.cli._store import open_diagnostics
from boardstore.errors import LockTimeoutError, SchemaMismatchError


def repair_cmd(
    apply: bool = typer.Option(False, "--apply", help="Write the repairs (default: dry-run)"),
    max_rows: Optional[int] = typer.Option(
        None, "--max-rows", help="Repair at most this many rows (default from config)"
    ),
) -> None:
    """Normalize active flags, email case and outdated documents."""
    from boardstore.cli import state

    json_mode = state.json_output

    try:
        diagnostics = open_diagnostics()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        plan = diagnostics.repair(apply=apply, max_rows=max_rows)
        if json_mode:
            print_object(plan.to_dict(), json_mode=True)
        else:
            verb = "Repaired" if plan.applied else "Would repair"
            print(f"{verb} {plan.rows_affected} row(s)")
            for action in plan.actions:
                new = "<upgraded document>" if action.field == "document" else action.new
                print(f"  row {action.row} {action.field}: {action.old!r} -> {new!r}")
            if plan.rows_skipped:
                print(f"{plan.rows_skipped} more row(s) need repair; run again")
            if not plan.applied and plan.actions:
                print("Dry run. Re-run with --apply to write.")
    except SchemaMismatchError as e:
        print_error(str(e))
        raise typer.Exit(ec.SCHEMA_MISMATCH)
    except LockTimeoutError as e:
        print_error(str(e))
        raise typer.Exit(ec.LOCK_TIMEOUT)
    except Exception as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    finally:
        diagnostics.store.close()
