"""boardstore CLI: operator console for the board's user store."""

from __future__ import annotations

import logging
from typing import Optional

import typer

from boardstore.cli import export_cmd, info, init_cmd, repair, users, verify

app = typer.Typer(
    name="boardstore",
    help="boardstore CLI: inspect, verify and repair the board's user store.",
    no_args_is_help=True,
)


class _State:
    """Global CLI state shared across subcommands."""

    backend_uri: str = "file://boardstore.json"
    config: str | None = None
    caller: str | None = None
    json_output: bool = False


state = _State()


def _version_callback(value: bool) -> None:
    if value:
        try:
            from importlib.metadata import version

            v = version("boardstore")
        except Exception:
            v = "unknown"
        print(f"boardstore {v}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    backend_uri: Optional[str] = typer.Option(
        None,
        "--backend-uri",
        "-b",
        envvar="BOARDSTORE_BACKEND_URI",
        help="Backend URI: memory://, file:///path/book.json or sheets://<spreadsheet-id>",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="BOARDSTORE_CONFIG",
        help="YAML config file path",
    ),
    caller: Optional[str] = typer.Option(
        None,
        "--as",
        envvar="BOARDSTORE_CALLER",
        help="Act as this user email; access rules then apply",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output when supported"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr"),
    version: bool = typer.Option(
        False, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all boardstore commands."""
    from boardstore.backend import parse_backend_target

    resolved_uri = backend_uri or _State.backend_uri
    try:
        parse_backend_target(resolved_uri)
    except Exception as e:
        raise typer.BadParameter(str(e))

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )

    state.backend_uri = resolved_uri
    state.config = config
    state.caller = caller
    state.json_output = json_output
    if ctx.invoked_subcommand is None and not version:
        print(ctx.get_help())
        raise typer.Exit()


# Register subcommand groups
app.add_typer(users.app, name="users", help="Look up, list and delete users")

# Register top-level commands
app.command(name="init")(init_cmd.init_cmd)
app.command(name="info")(info.info_cmd)
app.command(name="verify")(verify.verify_cmd)
app.command(name="repair")(repair.repair_cmd)
app.command(name="export")(export_cmd.export_cmd)


def main() -> None:
    """Entry point for the boardstore CLI."""
    app()
