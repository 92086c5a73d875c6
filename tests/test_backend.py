"""Tests for A1 helpers, the in-memory and file backends, and backend URIs."""

from __future__ import annotations

import json

import pytest

from boardstore.backend import (
    CellEdit,
    GridRange,
    InMemoryBackend,
    JsonFileBackend,
    StructuralEdit,
    TabularBackend,
    a1_range,
    column_index,
    column_letter,
    open_backend,
    parse_a1,
    parse_backend_target,
)
from boardstore.backend_sheets import SheetsBackend
from boardstore.errors import PermanentBackendError


class TestA1:
    @pytest.mark.parametrize(
        "index, letters", [(1, "A"), (5, "E"), (26, "Z"), (27, "AA"), (703, "AAA")]
    )
    def test_column_letters_round_trip(self, index: int, letters: str) -> None:
        assert column_letter(index) == letters
        assert column_index(letters) == index

    def test_column_letter_rejects_zero(self) -> None:
        with pytest.raises(ValueError):
            column_letter(0)

    def test_a1_range_builds_open_and_closed_ranges(self) -> None:
        assert a1_range("users", 2, 1, 201, 5) == "users!A2:E201"
        assert a1_range("users", 1, 1, None, 5) == "users!A1:E"
        assert a1_range("deletion log", 1) == "'deletion log'!A1:A"

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("users", GridRange("users")),
            ("users!B3", GridRange("users", 3, 2, 3, 2)),
            ("users!A2:E", GridRange("users", 2, 1, None, 5)),
            ("users!A:B", GridRange("users", 1, 1, None, 2)),
            ("users!A2:E10", GridRange("users", 2, 1, 10, 5)),
            ("users!1:1", GridRange("users", 1, 1, 1, None)),
            ("'my sheet'!A1:A", GridRange("my sheet", 1, 1, None, 1)),
        ],
    )
    def test_parse_a1(self, text: str, expected: GridRange) -> None:
        assert parse_a1(text) == expected

    def test_parse_a1_rejects_garbage(self) -> None:
        with pytest.raises(PermanentBackendError):
            parse_a1("users!%%")
        with pytest.raises(PermanentBackendError):
            parse_a1("!A1")


class TestInMemoryBackend:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryBackend(), TabularBackend)

    def test_reads_trim_trailing_blanks(self) -> None:
        backend = InMemoryBackend({"s": [["a", "b", ""], ["c"], ["", ""], []]})
        assert backend.batch_get(["s!A1:E"]) == [[["a", "b"], ["c"]]]
        assert backend.count_rows("s") == 2

    def test_batch_get_returns_one_block_per_range(self) -> None:
        backend = InMemoryBackend({"s": [["h1", "h2"], ["a", "b"], ["c", "d"]]})
        header, data = backend.batch_get(["s!A1:B1", "s!B2:B"])
        assert header == [["h1", "h2"]]
        assert data == [["b"], ["d"]]

    def test_missing_sheet_is_permanent(self) -> None:
        with pytest.raises(PermanentBackendError) as exc:
            InMemoryBackend().batch_get(["nope!A1"])
        assert exc.value.status == 400

    def test_batch_update_extends_rows(self) -> None:
        backend = InMemoryBackend({"s": [["h"]]})
        updated = backend.batch_update([CellEdit(sheet="s", row=3, col=2, values=["x", "y"])])
        assert updated == 2
        assert backend.snapshot()["s"][2] == ["", "x", "y"]

    def test_append_goes_after_last_non_blank_row(self) -> None:
        backend = InMemoryBackend({"s": [["h"], [], []]})
        backend.append("s", [["a"], ["b"]])
        assert backend.batch_get(["s"])[0] == [["h"], ["a"], ["b"]]

    def test_structural_edit_deletes_and_inserts(self) -> None:
        backend = InMemoryBackend({"s": [["h"], ["a"], ["b"], ["c"]]})
        backend.structural_edit(
            [
                StructuralEdit(kind="delete_rows", sheet="s", start_row=4, count=1),
                StructuralEdit(kind="delete_rows", sheet="s", start_row=2, count=1),
            ]
        )
        assert backend.batch_get(["s"])[0] == [["h"], ["b"]]
        backend.structural_edit(
            [StructuralEdit(kind="insert_rows", sheet="s", start_row=2, count=1)]
        )
        assert backend.snapshot()["s"] == [["h"], [], ["b"]]

    def test_structural_edit_is_all_or_nothing(self) -> None:
        backend = InMemoryBackend({"s": [["h"], ["a"]]})
        with pytest.raises(PermanentBackendError):
            backend.structural_edit(
                [
                    StructuralEdit(kind="delete_rows", sheet="s", start_row=2, count=1),
                    StructuralEdit(kind="delete_rows", sheet="s", start_row=9, count=1),
                ]
            )
        assert backend.snapshot()["s"] == [["h"], ["a"]]

    def test_add_sheet_with_header(self) -> None:
        backend = InMemoryBackend()
        backend.structural_edit([StructuralEdit(kind="add_sheet", sheet="log", header=["a", "b"])])
        assert backend.list_sheets() == ["log"]
        assert backend.batch_get(["log!A1:B1"])[0] == [["a", "b"]]
        with pytest.raises(PermanentBackendError, match="already exists"):
            backend.structural_edit([StructuralEdit(kind="add_sheet", sheet="log")])

    def test_counts_calls(self) -> None:
        backend = InMemoryBackend({"s": [["h"]]})
        backend.batch_get(["s"])
        backend.batch_get(["s"])
        assert backend.calls["batch_get"] == 2


class TestJsonFileBackend:
    def test_writes_persist_across_instances(self, tmp_path) -> None:
        path = str(tmp_path / "book.json")
        backend = JsonFileBackend(path)
        backend.structural_edit([StructuralEdit(kind="add_sheet", sheet="users", header=["id"])])
        backend.append("users", [["u1"]])

        reopened = JsonFileBackend(path)
        assert reopened.batch_get(["users"])[0] == [["id"], ["u1"]]
        with open(path, encoding="utf-8") as f:
            assert "sheets" in json.load(f)
        assert reopened.backend_info()["backend"] == "file"

    def test_handles_on_one_path_see_each_others_writes(self, tmp_path) -> None:
        path = str(tmp_path / "book.json")
        first = JsonFileBackend(path)
        second = JsonFileBackend(path)
        first.structural_edit([StructuralEdit(kind="add_sheet", sheet="users", header=["id"])])

        assert second.list_sheets() == ["users"]
        first.append("users", [["u1"]])
        second.append("users", [["u2"]])
        first.batch_update([CellEdit(sheet="users", row=2, col=2, values=["x"])])

        expected = [["id"], ["u1", "x"], ["u2"]]
        assert first.batch_get(["users"])[0] == expected
        assert second.batch_get(["users"])[0] == expected
        assert JsonFileBackend(path).batch_get(["users"])[0] == expected

    def test_rejects_non_workbook_file(self, tmp_path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(PermanentBackendError):
            JsonFileBackend(str(path))


class TestBackendTargets:
    def test_memory(self) -> None:
        assert parse_backend_target("memory://").backend == "memory"

    def test_file_absolute_and_relative(self) -> None:
        assert parse_backend_target("file:///tmp/book.json").path == "/tmp/book.json"
        assert parse_backend_target("file://book.json").path == "book.json"

    def test_sheets(self) -> None:
        target = parse_backend_target("sheets://1AbCdEf")
        assert target.backend == "sheets"
        assert target.spreadsheet_id == "1AbCdEf"

    def test_unknown_scheme(self) -> None:
        with pytest.raises(PermanentBackendError, match="Unsupported backend URI scheme"):
            parse_backend_target("postgres://db")

    def test_open_backend(self, tmp_path) -> None:
        assert isinstance(open_backend("memory://"), InMemoryBackend)
        assert isinstance(open_backend(f"file://{tmp_path}/b.json"), JsonFileBackend)
        sheets = open_backend("sheets://abc", token_provider=lambda: "tok")
        assert isinstance(sheets, SheetsBackend)
        sheets.close()

    def test_sheets_needs_token_provider(self) -> None:
        with pytest.raises(PermanentBackendError, match="token provider"):
            open_backend("sheets://abc")
