"""boardstore users: look up, list, search and delete user records."""

from __future__ import annotations

from typing import Optional

import typer

from boardstore.cli import _exitcodes as ec
from boardstore.cli._output import (
    print_error,
    print_object,
    print_table,
    print_users,
    record_to_dict,
)
from boardstore.cli._store import open_cli_store, resolve_caller
from boardstore.diagnostics import Diagnostics
from boardstore.errors import (
    AccessDeniedError,
    LockTimeoutError,
    NotFoundError,
    SchemaMismatchError,
    ValidationError,
)

app = typer.Typer(no_args_is_help=True)


def _fail(e: Exception) -> typer.Exit:
    print_error(str(e))
    if isinstance(e, NotFoundError):
        return typer.Exit(ec.NOT_FOUND)
    if isinstance(e, AccessDeniedError):
        return typer.Exit(ec.ACCESS_DENIED)
    if isinstance(e, SchemaMismatchError):
        return typer.Exit(ec.SCHEMA_MISMATCH)
    if isinstance(e, LockTimeoutError):
        return typer.Exit(ec.LOCK_TIMEOUT)
    if isinstance(e, ValidationError):
        return typer.Exit(ec.USAGE_ERROR)
    return typer.Exit(ec.EXECUTION_FAILURE)


@app.command(name="list")
def list_cmd(
    active_only: bool = typer.Option(False, "--active-only", help="Only active users"),
    published_only: bool = typer.Option(False, "--published-only", help="Only published boards"),
    budget: Optional[float] = typer.Option(None, "--budget", help="Scan time budget in seconds"),
) -> None:
    """List users."""
    from boardstore.cli import state

    try:
        store = open_cli_store()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        listing = store.get_all_users(
            active_only=active_only,
            published_only=published_only,
            budget_s=budget,
            caller=resolve_caller(store.config),
        )
        print_users(listing.users, json_mode=state.json_output)
        if listing.truncated:
            print_error(
                f"scan truncated after {listing.processed_rows} of {listing.total_rows} rows"
            )
    except Exception as e:
        raise _fail(e)
    finally:
        store.close()


@app.command(name="get")
def get_cmd(
    user_id: Optional[str] = typer.Argument(None, help="User id"),
    email: Optional[str] = typer.Option(None, "--email", help="Look up by email"),
    spreadsheet_id: Optional[str] = typer.Option(
        None, "--spreadsheet-id", help="Look up by the board's linked spreadsheet"
    ),
    published: bool = typer.Option(
        False, "--published", help="Allow reading another user's published board"
    ),
) -> None:
    """Show one user record. On a miss, suggest close matches."""
    from boardstore.cli import state

    given = [v for v in (user_id, email, spreadsheet_id) if v]
    if len(given) != 1:
        print_error("Give exactly one of USER_ID, --email or --spreadsheet-id")
        raise typer.Exit(ec.USAGE_ERROR)

    try:
        store = open_cli_store()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        caller = resolve_caller(store.config)
        if user_id:
            record = store.find_user_by_id(user_id, caller=caller, published_read=published)
        elif email:
            record = store.find_user_by_email(email, caller=caller, published_read=published)
        else:
            assert spreadsheet_id is not None
            record = store.find_user_by_spreadsheet_id(
                spreadsheet_id, caller=caller, published_read=published
            )
        print_object(record_to_dict(record), json_mode=state.json_output)
    except NotFoundError as e:
        if user_id or email:
            matches = Diagnostics(store).suggest(user_id or email or "", limit=3)
            if matches:
                print_error("did you mean: " + ", ".join(m.candidate for m in matches))
        raise _fail(e)
    except Exception as e:
        raise _fail(e)
    finally:
        store.close()


@app.command(name="search")
def search_cmd(
    query: str = typer.Argument(..., help="Email or id fragment to match"),
    limit: int = typer.Option(5, "--limit", help="Maximum matches"),
    min_similarity: float = typer.Option(0.5, "--min-similarity", help="Similarity floor, 0..1"),
) -> None:
    """Fuzzy-match emails and ids, best first."""
    from boardstore.cli import state

    try:
        store = open_cli_store()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        matches = Diagnostics(store).suggest(query, limit=limit, min_similarity=min_similarity)
        print_table(
            ["candidate", "similarity", "distance"],
            [[m.candidate, round(m.similarity, 3), m.distance] for m in matches],
            json_mode=state.json_output,
        )
        if not matches and not state.json_output:
            print("No close matches.")
    except Exception as e:
        raise _fail(e)
    finally:
        store.close()


@app.command(name="delete")
def delete_cmd(
    user_id: str = typer.Argument(..., help="User id"),
    reason: str = typer.Option("", "--reason", help="Reason recorded in the deletion log"),
) -> None:
    """Delete a user. Acting as the user deletes your own account; admins may delete any."""
    from boardstore.cli import state

    if not state.caller:
        print_error("delete needs --as <email> to identify who is deleting")
        raise typer.Exit(ec.USAGE_ERROR)

    try:
        store = open_cli_store()
    except Exception as e:
        print_error(f"Cannot open backend: {e}")
        raise typer.Exit(ec.DATABASE_ERROR)

    try:
        caller = resolve_caller(store.config)
        assert caller is not None
        target = store.find_user_by_id(user_id)
        if target.normalized_email == caller.normalized_email:
            result = store.delete_user_account(user_id, caller, reason)
        else:
            result = store.delete_user_account_by_admin(user_id, caller, reason)
        data = {
            "user_id": result.user_id,
            "email": result.email,
            "deleted_rows": result.deleted_rows,
            "delete_type": result.delete_type,
            "audit_logged": result.audit_logged,
        }
        if state.json_output:
            print_object(data, json_mode=True)
        else:
            print(f"Deleted {result.email} ({result.user_id}), {result.deleted_rows} row(s)")
            if not result.audit_logged:
                print_error("the deletion log entry could not be written")
    except Exception as e:
        raise _fail(e)
    finally:
        store.close()
