"""boardstore verify: run the integrity checks over the users sheet."""

from __future__ import annotations

from typing import Optional

import typer

from boardstore.cli import _exitcodes as ec
from boardstore.cli._output import print_error, print_object
from boardstore.cli._store import open_diagnostics
from boardstore.diagnostics import ERROR, PASS


def verify_cmd(
    budget: Optional[float] = typer.Option(
        None, "--budget", help="Scan time budget in seconds (default from config)"
    ),
    strict: bool = typer.Option(False, "--strict", help="Non-zero exit on warnings too"),
) -> None:
    """Check the users sheet for duplicates, missing keys, bad formats and orphans."""
    from boardstore.cli import state

    json_mode = state.json_output

    try:
        diagnostics = open_diagnostics()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        report = diagnostics.check_integrity(budget_s=budget)
        if json_mode:
            print_object(report.to_dict(), json_mode=True)
        else:
            print(f"Integrity: {report.status}")
            print(f"Rows scanned: {report.processed_rows}/{report.total_rows}")
            for check in report.checks:
                line = f"  [{check.status}] {check.name}"
                if check.count and check.status != PASS:
                    line += f" ({check.count})"
                if check.detail:
                    line += f": {check.detail}"
                print(line)
                for finding in check.findings[:20]:
                    print(f"      {finding}")
                if len(check.findings) > 20:
                    print(f"      ... {len(check.findings) - 20} more")
    except Exception as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)
    finally:
        diagnostics.store.close()

    if report.status == ERROR or (strict and report.status != PASS):
        raise typer.Exit(ec.EXECUTION_FAILURE)
