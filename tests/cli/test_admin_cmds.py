"""Tests for boardstore init, info, verify, repair and export."""

import json
import os

from boardstore.cli import app
from tests.cli.conftest import invoke, read_book
from tests.conftest import ALICE_ID, BOB_ID, HEADER, doc

CAROL_ID = "9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c03"


def _write_book(path, rows):
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"sheets": {"users": [list(HEADER)] + rows}}, f)
    return path


# --- init ---


def test_init_creates_sheet(runner, cli_book):
    result = invoke(runner, ["init"], cli_book)
    assert result.exit_code == 0
    assert "Initialized" in result.output
    assert read_book(cli_book)["users"] == [list(HEADER)]

    result = invoke(runner, ["init"], cli_book)
    assert result.exit_code == 0
    assert "Already initialized" in result.output


def test_init_dry_run_writes_nothing(runner, cli_book):
    result = invoke(runner, ["--json", "init", "--dry-run"], cli_book)
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["status"] == "dry_run"
    assert data["sheet_exists"] is False
    assert not os.path.exists(cli_book)


def test_init_rejects_foreign_header(runner, cli_book):
    with open(cli_book, "w", encoding="utf-8") as f:
        json.dump({"sheets": {"users": [["name", "score"]]}}, f)
    result = invoke(runner, ["init"], cli_book)
    assert result.exit_code == 4


def test_bad_backend_uri(runner):
    result = runner.invoke(app, ["-b", "ftp://x", "info"])
    assert result.exit_code == 2


# --- info ---


def test_info_json(runner, seeded_book):
    result = invoke(runner, ["--json", "info", "--stats"], seeded_book)
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["backend"] == "file"
    assert data["initialized"] is True
    assert data["audit_sheet_present"] is False
    assert data["users_total"] == 2
    assert data["users_active"] == 2
    assert data["document_version"] == 2


def test_info_text(runner, seeded_book):
    result = invoke(runner, ["info"], seeded_book)
    assert result.exit_code == 0
    assert "Users sheet: users (present)" in result.output


# --- verify ---


def test_verify_clean(runner, seeded_book):
    result = invoke(runner, ["verify"], seeded_book)
    assert result.exit_code == 0
    assert "Integrity: PASS" in result.output


def test_verify_duplicates_fail(runner, cli_book):
    _write_book(
        cli_book,
        [
            [ALICE_ID, "alice@school.edu", True, doc(), ""],
            [BOB_ID, "alice@school.edu", True, doc(), ""],
        ],
    )
    result = invoke(runner, ["--json", "verify"], cli_book)
    assert result.exit_code == 5
    data = json.loads(result.stdout)
    assert data["status"] == "ERROR"
    dup = next(c for c in data["checks"] if c["name"] == "duplicates")
    assert dup["findings"][0]["rows"] == [2, 3]


def test_verify_strict_fails_on_warnings(runner, cli_book):
    _write_book(cli_book, [[ALICE_ID, "alice@school.edu", "perhaps", doc(), ""]])
    assert invoke(runner, ["verify"], cli_book).exit_code == 0
    assert invoke(runner, ["verify", "--strict"], cli_book).exit_code == 5


# --- repair ---


def test_repair_dry_run_then_apply(runner, cli_book):
    _write_book(
        cli_book,
        [
            [ALICE_ID, "alice@school.edu", True, doc(), ""],
            [BOB_ID, " Bob@School.edu", "TRUE", doc(), ""],
        ],
    )

    result = invoke(runner, ["repair"], cli_book)
    assert result.exit_code == 0
    assert "Would repair 1 row(s)" in result.output
    assert read_book(cli_book)["users"][2][1] == " Bob@School.edu"

    result = invoke(runner, ["repair", "--apply"], cli_book)
    assert result.exit_code == 0
    assert "Repaired 1 row(s)" in result.output
    bob = read_book(cli_book)["users"][2]
    assert bob[1:3] == ["bob@school.edu", True]
    assert bob[4]


def test_repair_json_respects_max_rows(runner, cli_book):
    _write_book(
        cli_book,
        [
            [ALICE_ID, "Alice@school.edu", True, doc(), ""],
            [BOB_ID, "Bob@school.edu", True, doc(), ""],
            [CAROL_ID, "Carol@school.edu", True, doc(), ""],
        ],
    )
    result = invoke(runner, ["--json", "repair", "--max-rows", "2"], cli_book)
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["rows_affected"] == 2
    assert data["rows_skipped"] == 1
    assert data["applied"] is False


# --- export ---


def test_export_jsonl(runner, seeded_book, tmp_path):
    out = str(tmp_path / "out" / "users.jsonl")
    result = invoke(runner, ["export", "--output", out], seeded_book)
    assert result.exit_code == 0
    assert "Exported 2 user(s)" in result.output
    with open(out, encoding="utf-8") as f:
        lines = [json.loads(line) for line in f]
    assert [u["email"] for u in lines] == ["alice@school.edu", "bob@school.edu"]
    assert lines[0]["document"]["spreadsheetId"] == "sheet-a"


def test_export_active_only(runner, cli_book, tmp_path):
    _write_book(
        cli_book,
        [
            [ALICE_ID, "alice@school.edu", True, doc(), ""],
            [BOB_ID, "bob@school.edu", False, doc(), ""],
        ],
    )
    out = str(tmp_path / "active.jsonl")
    result = invoke(runner, ["--json", "export", "--output", out, "--active-only"], cli_book)
    assert result.exit_code == 0
    assert json.loads(result.stdout)["users"] == 1


def test_export_truncated_scan_exits_partial(runner, seeded_book, tmp_path):
    config = tmp_path / "chunked.yaml"
    config.write_text("scan_chunk_rows: 1\n")
    out = str(tmp_path / "partial.jsonl")
    result = invoke(
        runner, ["export", "--output", out, "--budget-s", "0"], seeded_book, str(config)
    )
    assert result.exit_code == 9
    assert "scan truncated after 1 of 2 rows" in result.output
    with open(out, encoding="utf-8") as f:
        assert len(f.readlines()) == 1
