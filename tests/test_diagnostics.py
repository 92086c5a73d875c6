"""Tests for integrity checks, auto-repair and fuzzy lookup."""

from __future__ import annotations

import json

import pytest

from boardstore.backend import InMemoryBackend
from boardstore.config import BoardStoreConfig
from boardstore.diagnostics import (
    ERROR,
    PASS,
    WARN,
    Diagnostics,
    auto_repair,
    find_duplicates,
    find_invalid_formats,
    find_missing_required,
    find_orphaned,
    fuzzy_match,
    levenshtein,
    similarity,
)
from boardstore.rows import raw_rows
from boardstore.store import UserStore

from tests.conftest import ALICE_ID, BOB_ID, HEADER, doc

CAROL_ID = "9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c03"


def _store(rows: list[list], config: BoardStoreConfig | None = None) -> UserStore:
    backend = InMemoryBackend({"users": [list(HEADER)] + rows})
    return UserStore(backend, config=config or BoardStoreConfig(), sleep=lambda _s: None)


class TestScans:
    def test_duplicates_by_id_and_email(self) -> None:
        rows = raw_rows(
            [
                [ALICE_ID, "alice@school.edu", True, doc(), ""],
                [BOB_ID, "bob@school.edu", True, doc(), ""],
                [BOB_ID, " BOB@school.edu", False, doc(), ""],
                ["", "", True, "", ""],
            ]
        )
        groups = {(g.field, g.value): g.rows for g in find_duplicates(rows)}
        assert groups == {("id", BOB_ID): [3, 4], ("email", "bob@school.edu"): [3, 4]}

    def test_duplicate_id_rows_are_header_inclusive(self) -> None:
        rows = raw_rows(
            [
                ["xyz-001", "a@school.edu", True, doc(), ""],
                ["abc-123", "b@school.edu", True, doc(), ""],
                ["abc-123", "c@school.edu", True, doc(), ""],
            ]
        )
        (group,) = find_duplicates(rows)
        assert (group.field, group.value, group.rows) == ("id", "abc-123", [3, 4])

    def test_missing_required(self) -> None:
        rows = raw_rows([["", "a@school.edu", True, doc(), ""], [ALICE_ID, " ", True, doc(), ""]])
        issues = [(i.row, i.field) for i in find_missing_required(rows)]
        assert issues == [(2, "id"), (3, "email")]

    def test_invalid_formats(self) -> None:
        rows = raw_rows(
            [
                ["user-1", "alice@school.edu", True, doc(), ""],
                [BOB_ID, "bob-at-school", "perhaps", "{oops", ""],
                [CAROL_ID.upper(), "carol@school.edu", "FALSE", doc(), ""],
            ]
        )
        problems = [(i.row, i.field, i.problem) for i in find_invalid_formats(rows)]
        assert problems == [
            (2, "id", "id is not a UUID"),
            (3, "email", "malformed email"),
            (3, "active", "unrecognized boolean"),
            (3, "document", "not a JSON object"),
        ]

    def test_orphaned_inactive_rows(self) -> None:
        published_doc = doc(spreadsheetId="s1", isPublished=True)
        rows = raw_rows(
            [
                [ALICE_ID, "alice@school.edu", False, published_doc, ""],
                [BOB_ID, "bob@school.edu", False, doc(), ""],
                [CAROL_ID, "carol@school.edu", True, doc(formUrl="f"), ""],
                ["x", "x@school.edu", "false", doc(columnMapping={"a": "B"}), ""],
            ]
        )
        issues = find_orphaned(rows)
        assert [(i.row, i.value) for i in issues] == [
            (2, ["spreadsheetId", "isPublished"]),
            (5, ["columnMapping"]),
        ]


class TestAutoRepair:
    def test_normalizes_markers_emails_and_documents(self) -> None:
        rows = raw_rows(
            [
                [ALICE_ID, "alice@school.edu", True, doc(), ""],
                [BOB_ID, " Bob@School.EDU", "", json.dumps({"isDraft": True}), ""],
                ["", "nobody@school.edu", "maybe", "", ""],
            ]
        )
        plan = auto_repair(rows)

        assert plan.rows_affected == 1
        assert {(a.row, a.field) for a in plan.actions} == {
            (3, "active"),
            (3, "email"),
            (3, "document"),
        }
        (edit,) = plan.edits
        assert (edit.sheet, edit.row, edit.col) == ("users", 3, 2)
        email, active, document, stamp = edit.values
        assert email == "bob@school.edu"
        assert active is True
        assert json.loads(document)["schemaVersion"] == 2
        assert "isDraft" not in json.loads(document)
        assert stamp

    def test_unparseable_document_is_rebuilt(self) -> None:
        plan = auto_repair(raw_rows([[ALICE_ID, "alice@school.edu", True, "{oops", ""]]))
        (action,) = plan.actions
        assert action.old == "<unparseable>"
        assert action.new["setupStatus"] == "pending"
        assert action.new["_corrupt"] == "{oops"
        assert json.loads(plan.edits[0].values[2])["_corrupt"] == "{oops"

    def test_oversized_unparseable_document_is_left_in_place(self) -> None:
        rows = raw_rows([[ALICE_ID, "Alice@school.edu", True, "{" + "x" * 200, ""]])
        plan = auto_repair(rows, max_document_chars=100)
        assert [a.field for a in plan.actions] == ["email"]
        (edit,) = plan.edits
        assert edit.values[2] == "{" + "x" * 200

    def test_bound_leaves_rest_for_later(self) -> None:
        rows = raw_rows(
            [[f"id-{i}", f"User{i}@school.edu", True, doc(), ""] for i in range(5)]
        )
        plan = auto_repair(rows, max_rows=2)
        assert plan.rows_affected == 2
        assert plan.rows_skipped == 3
        assert [e.row for e in plan.edits] == [2, 3]

    def test_clean_rows_need_nothing(self) -> None:
        plan = auto_repair(raw_rows([[ALICE_ID, "alice@school.edu", False, doc(), ""]]))
        assert plan.edits == []
        assert plan.to_dict()["rows_affected"] == 0


class TestFuzzy:
    def test_levenshtein(self) -> None:
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0
        assert levenshtein("abcdef", "uvwxyz", max_distance=2) == 3

    def test_similarity(self) -> None:
        assert similarity("", "") == 1.0
        assert similarity("abcd", "abcx") == pytest.approx(0.75)

    def test_ranks_candidates(self) -> None:
        matches = fuzzy_match(
            "JON@school.edu",
            ["john@school.edu", "joan@school.edu", "zed@elsewhere.org", "john@school.edu"],
            min_similarity=0.5,
        )
        assert [m.candidate for m in matches] == ["joan@school.edu", "john@school.edu"]
        assert matches[0].distance == 1
        assert matches[0].similarity == pytest.approx(1 - 1 / 15)

    def test_near_miss_email_ranks_first(self) -> None:
        matches = fuzzy_match(
            "jon@example.com", ["jane@example.com", "bob@other.org", "john@example.com"]
        )
        assert matches[0].candidate == "john@example.com"
        assert matches[0].similarity == pytest.approx(0.9375)

    def test_limit(self) -> None:
        candidates = [f"user{i}@school.edu" for i in range(10)]
        assert len(fuzzy_match("user@school.edu", candidates, limit=3)) == 3


class TestDiagnostics:
    def test_clean_table_passes(self, seeded_store: UserStore) -> None:
        report = Diagnostics(seeded_store).check_integrity()
        assert report.status == PASS
        assert report.processed_rows == 2
        assert [c.name for c in report.checks] == [
            "schema",
            "scan",
            "duplicates",
            "missing_required",
            "invalid_formats",
            "orphaned",
        ]

    def test_duplicates_fail_the_report(self) -> None:
        store = _store(
            [
                [ALICE_ID, "alice@school.edu", True, doc(), ""],
                [BOB_ID, "bob@school.edu", True, doc(), ""],
                [CAROL_ID, "BOB@school.edu", True, doc(), ""],
            ]
        )
        report = Diagnostics(store).check_integrity()
        assert report.status == ERROR
        dup = next(c for c in report.checks if c.name == "duplicates")
        assert dup.findings[0].rows == [3, 4]
        assert report.to_dict()["checks"][2]["findings"][0]["rows"] == [3, 4]

    def test_format_problems_only_warn(self) -> None:
        store = _store([[ALICE_ID, "alice@school.edu", "perhaps", doc(), ""]])
        assert Diagnostics(store).check_integrity().status == WARN

    def test_bad_header_is_an_error(self) -> None:
        backend = InMemoryBackend({"users": [["email", "id"]]})
        report = Diagnostics(UserStore(backend)).check_integrity()
        assert report.status == ERROR
        assert [c.name for c in report.checks] == ["schema"]

    def test_truncated_scan_warns(self) -> None:
        store = _store(
            [
                [ALICE_ID, "alice@school.edu", True, doc(), ""],
                [BOB_ID, "bob@school.edu", True, doc(), ""],
            ],
            BoardStoreConfig(scan_chunk_rows=1),
        )
        report = Diagnostics(store).check_integrity(budget_s=0)
        assert report.truncated
        assert report.status == WARN

    def test_repair_dry_run_then_apply(self) -> None:
        store = _store(
            [
                [ALICE_ID, "alice@school.edu", True, doc(), ""],
                [BOB_ID, "Bob@School.edu", "TRUE", doc(), ""],
            ]
        )
        backend = store.backend
        assert isinstance(backend, InMemoryBackend)
        diagnostics = Diagnostics(store)

        plan = diagnostics.repair()
        assert plan.rows_affected == 1
        assert not plan.applied
        assert "batch_update" not in backend.calls

        applied = diagnostics.repair(apply=True)
        assert applied.applied
        assert backend.calls["batch_update"] == 1
        row = backend.batch_get(["users!A3:E3"])[0][0]
        assert row[1:3] == ["bob@school.edu", True]
        assert store.find_user_by_email("bob@school.edu").id == BOB_ID
        assert diagnostics.repair().rows_affected == 0

    def test_suggest(self, seeded_store: UserStore) -> None:
        suggestions = Diagnostics(seeded_store).suggest("alice@school.ed")
        assert suggestions[0].candidate == "alice@school.edu"

    def test_flush_cache(self, seeded_store: UserStore) -> None:
        seeded_store.find_user_by_id(ALICE_ID)
        assert Diagnostics(seeded_store).flush_cache() == 1
        assert seeded_store.cache.get("id", ALICE_ID) is None
