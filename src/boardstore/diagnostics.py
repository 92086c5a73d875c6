"""Integrity scans, bounded auto-repair and fuzzy key lookup.

Everything here reads through the same batch layer as the store. Only
``Diagnostics.repair(apply=True)`` and ``Diagnostics.flush_cache`` change
anything, and neither ever merges or deletes rows.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from boardstore.backend import CellEdit
from boardstore.document import (
    CORRUPT_KEY,
    DOCUMENT_VERSION,
    document_version,
    parse_document,
    serialize_document,
    upgrade_document,
)
from boardstore.errors import BoardStoreError, ValidationError
from boardstore.models import UUID_RE, RawRow, is_valid_email, normalize_email
from boardstore.rows import (
    COL_ACTIVE,
    COL_DOCUMENT,
    COL_EMAIL,
    COL_ID,
    COL_LAST_MODIFIED,
    WIDTH,
    cell_key,
    format_timestamp,
    parse_bool,
    utcnow,
)

if TYPE_CHECKING:
    from boardstore.store import UserStore

logger = logging.getLogger(__name__)

PASS = "PASS"
WARN = "WARN"
ERROR = "ERROR"

_SEVERITY = {PASS: 0, WARN: 1, ERROR: 2}


@dataclass
class DuplicateGroup:
    """Every row (1-based, header-inclusive) sharing one key value."""

    field: str
    value: str
    rows: list[int]


@dataclass
class RowIssue:
    row: int
    field: str
    value: Any
    problem: str


@dataclass
class RepairAction:
    row: int
    field: str
    old: Any
    new: Any


@dataclass
class RepairPlan:
    actions: list[RepairAction] = field(default_factory=list)
    edits: list[CellEdit] = field(default_factory=list)
    rows_affected: int = 0
    rows_skipped: int = 0
    applied: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "actions": [dataclasses.asdict(a) for a in self.actions],
            "rows_affected": self.rows_affected,
            "rows_skipped": self.rows_skipped,
            "applied": self.applied,
        }


@dataclass
class FuzzyMatch:
    candidate: str
    similarity: float
    distance: int


@dataclass
class CheckResult:
    name: str
    status: str
    count: int = 0
    detail: str = ""
    findings: list[Any] = field(default_factory=list)


@dataclass
class IntegrityReport:
    checks: list[CheckResult]
    processed_rows: int = 0
    total_rows: int = 0
    truncated: bool = False

    @property
    def status(self) -> str:
        worst = PASS
        for check in self.checks:
            if _SEVERITY[check.status] > _SEVERITY[worst]:
                worst = check.status
        return worst

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "processed_rows": self.processed_rows,
            "total_rows": self.total_rows,
            "truncated": self.truncated,
            "checks": [
                {
                    "name": c.name,
                    "status": c.status,
                    "count": c.count,
                    "detail": c.detail,
                    "findings": [
                        dataclasses.asdict(f) if dataclasses.is_dataclass(f) else f
                        for f in c.findings
                    ],
                }
                for c in self.checks
            ],
        }


# --- Scans ---


def find_duplicates(rows: list[RawRow]) -> list[DuplicateGroup]:
    """One pass over ``id`` and normalized ``email``. Blank keys are ignored."""
    seen: dict[tuple[str, str], list[int]] = {}
    for row in rows:
        for key_field in ("id", "email"):
            value = cell_key(row, key_field)
            if value:
                seen.setdefault((key_field, value), []).append(row.row_number)
    return [
        DuplicateGroup(field=key_field, value=value, rows=row_numbers)
        for (key_field, value), row_numbers in seen.items()
        if len(row_numbers) > 1
    ]


def find_missing_required(rows: list[RawRow]) -> list[RowIssue]:
    issues = []
    for row in rows:
        if not cell_key(row, "id"):
            issues.append(RowIssue(row.row_number, "id", row.cell(COL_ID), "missing id"))
        if not cell_key(row, "email"):
            issues.append(RowIssue(row.row_number, "email", row.cell(COL_EMAIL), "missing email"))
    return issues


def find_invalid_formats(rows: list[RawRow]) -> list[RowIssue]:
    issues = []
    for row in rows:
        user_id = cell_key(row, "id")
        if user_id and not UUID_RE.match(user_id):
            issues.append(RowIssue(row.row_number, "id", user_id, "id is not a UUID"))
        email = str(row.cell(COL_EMAIL)).strip()
        if email and not is_valid_email(email):
            issues.append(RowIssue(row.row_number, "email", email, "malformed email"))
        if not parse_bool(row.cell(COL_ACTIVE))[1]:
            issues.append(
                RowIssue(row.row_number, "active", row.cell(COL_ACTIVE), "unrecognized boolean")
            )
        if not parse_document(row.cell(COL_DOCUMENT))[1]:
            issues.append(
                RowIssue(row.row_number, "document", "<unparseable>", "not a JSON object")
            )
    return issues


def _orphaned_fields(document: dict[str, Any]) -> list[str]:
    found = []
    if document.get("spreadsheetId"):
        found.append("spreadsheetId")
    if document.get("formUrl"):
        found.append("formUrl")
    if isinstance(document.get("columnMapping"), dict) and document["columnMapping"]:
        found.append("columnMapping")
    if document.get("isPublished") is True:
        found.append("isPublished")
    return found


def find_orphaned(rows: list[RawRow]) -> list[RowIssue]:
    """Inactive rows that still point at data sources or stay published."""
    issues = []
    for row in rows:
        active, ok = parse_bool(row.cell(COL_ACTIVE))
        if active or not ok:
            continue
        document, _ = parse_document(row.cell(COL_DOCUMENT))
        leftovers = _orphaned_fields(document)
        if leftovers:
            issues.append(
                RowIssue(
                    row.row_number,
                    "document",
                    leftovers,
                    f"inactive user still has {', '.join(leftovers)}",
                )
            )
    return issues


# --- Repair ---


def _row_repairs(row: RawRow) -> list[RepairAction]:
    actions = []
    raw_active = row.cell(COL_ACTIVE)
    if not isinstance(raw_active, bool):
        active, _ = parse_bool(raw_active)
        actions.append(RepairAction(row.row_number, "active", raw_active, active))

    raw_email = row.cell(COL_EMAIL)
    email = normalize_email(raw_email)
    if email and email != raw_email:
        actions.append(RepairAction(row.row_number, "email", raw_email, email))

    raw_document = row.cell(COL_DOCUMENT)
    document, ok = parse_document(raw_document)
    if not ok:
        # The unreadable text rides along under CORRUPT_KEY.
        document = {CORRUPT_KEY: str(raw_document)}
    if not ok or document_version(document) < DOCUMENT_VERSION:
        upgraded = upgrade_document(document)
        actions.append(
            RepairAction(
                row.row_number,
                "document",
                "<unparseable>" if not ok else document_version(document),
                upgraded,
            )
        )
    return actions


_REPAIR_COLUMNS = {"email": COL_EMAIL, "active": COL_ACTIVE, "document": COL_DOCUMENT}


def _fitting_actions(actions: list[RepairAction], max_document_chars: int) -> list[RepairAction]:
    """Drop a document rewrite that would not fit in its cell; the cell is left as is."""
    kept = []
    for action in actions:
        if action.field == "document":
            try:
                serialize_document(action.new, max_chars=max_document_chars)
            except ValidationError as e:
                logger.warning("Row %d document left unrepaired: %s", action.row, e)
                continue
        kept.append(action)
    return kept


def auto_repair(
    rows: list[RawRow],
    *,
    sheet: str = "users",
    max_rows: int = 100,
    max_document_chars: int = 32000,
) -> RepairPlan:
    """Plan normalization-only fixes for at most ``max_rows`` rows.

    Blank or unrecognized ``active`` markers become booleans (true),
    emails are trimmed and lower-cased, and unparseable or outdated
    documents are upgraded and stamped. An unparseable document keeps
    its original text under ``_corrupt``; if that would overflow the cell
    the document is left untouched. Rows without an id are left alone.
    Duplicates are never resolved here.
    """
    plan = RepairPlan()
    stamp = format_timestamp(utcnow())
    for row in rows:
        if not cell_key(row, "id"):
            continue
        actions = _row_repairs(row)
        actions = _fitting_actions(actions, max_document_chars)
        if not actions:
            continue
        if plan.rows_affected >= max_rows:
            plan.rows_skipped += 1
            continue

        values = [row.cell(i) for i in range(WIDTH)]
        for action in actions:
            new = action.new
            if action.field == "document":
                new = serialize_document(action.new, max_chars=max_document_chars)
            values[_REPAIR_COLUMNS[action.field]] = new
        values[COL_LAST_MODIFIED] = stamp
        plan.edits.append(
            CellEdit(sheet=sheet, row=row.row_number, col=COL_EMAIL + 1, values=values[COL_EMAIL:])
        )
        plan.actions.extend(actions)
        plan.rows_affected += 1
    return plan


# --- Fuzzy lookup ---


def levenshtein(a: str, b: str, max_distance: int | None = None) -> int:
    """Edit distance, giving up with ``max_distance + 1`` once the bound is exceeded."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    limit = max_distance if max_distance is not None else len(a)
    if len(a) - len(b) > limit:
        return limit + 1
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (ca != cb))
            )
        if min(current) > limit:
            return limit + 1
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def fuzzy_match(
    query: str,
    candidates: list[str],
    *,
    limit: int = 5,
    min_similarity: float = 0.0,
) -> list[FuzzyMatch]:
    """Rank candidates by similarity to ``query``, case-insensitively, best first."""
    needle = query.strip().lower()
    matches = []
    for candidate in dict.fromkeys(c for c in candidates if c):
        hay = candidate.strip().lower()
        longest = max(len(needle), len(hay))
        if longest == 0:
            continue
        bound = int((1.0 - min_similarity) * longest + 1e-9)
        distance = levenshtein(needle, hay, max_distance=bound)
        if distance > bound:
            continue
        score = 1.0 - distance / longest
        if score >= min_similarity:
            matches.append(FuzzyMatch(candidate=candidate, similarity=score, distance=distance))
    matches.sort(key=lambda m: (-m.similarity, m.candidate))
    return matches[:limit]


# --- Operator entry points ---


def _run_check(
    name: str,
    fn: Callable[[], list[Any]],
    failing_status: str,
) -> CheckResult:
    try:
        findings = fn()
    except (BoardStoreError, ValueError, TypeError) as e:
        logger.warning("Integrity check %s failed: %s", name, e)
        return CheckResult(name=name, status=ERROR, detail=f"check failed: {e}")
    status = failing_status if findings else PASS
    return CheckResult(name=name, status=status, count=len(findings), findings=findings)


class Diagnostics:
    """Operator-facing diagnostics bound to one store."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def check_integrity(self, *, budget_s: float | None = None) -> IntegrityReport:
        """Run every check. A check that fails is reported inline as ERROR."""
        try:
            self.store.read_header()
        except BoardStoreError as e:
            return IntegrityReport(checks=[CheckResult(name="schema", status=ERROR, detail=str(e))])

        try:
            scan = self.store.io.scan(self.store.sheet, width=WIDTH, budget_s=budget_s)
        except BoardStoreError as e:
            return IntegrityReport(
                checks=[
                    CheckResult(name="schema", status=PASS),
                    CheckResult(name="scan", status=ERROR, detail=str(e)),
                ]
            )

        rows = scan.rows
        checks = [
            CheckResult(name="schema", status=PASS),
            CheckResult(
                name="scan",
                status=WARN if scan.truncated else PASS,
                count=scan.processed_rows,
                detail=(
                    f"truncated after {scan.processed_rows} of {scan.total_rows} rows"
                    if scan.truncated
                    else ""
                ),
            ),
            _run_check("duplicates", lambda: find_duplicates(rows), ERROR),
            _run_check("missing_required", lambda: find_missing_required(rows), ERROR),
            _run_check("invalid_formats", lambda: find_invalid_formats(rows), WARN),
            _run_check("orphaned", lambda: find_orphaned(rows), WARN),
        ]
        return IntegrityReport(
            checks=checks,
            processed_rows=scan.processed_rows,
            total_rows=scan.total_rows,
            truncated=scan.truncated,
        )

    def _plan(self, rows: list[RawRow], max_rows: int | None) -> RepairPlan:
        config = self.store.config
        return auto_repair(
            rows,
            sheet=self.store.sheet,
            max_rows=config.repair_max_rows if max_rows is None else max_rows,
            max_document_chars=config.max_document_chars,
        )

    def repair(self, *, apply: bool = False, max_rows: int | None = None) -> RepairPlan:
        """Plan normalization repairs; with ``apply`` re-plan under the store lock and write."""
        plan = self._plan(self.store.read_rows(), max_rows)
        if not apply:
            return plan

        store = self.store
        with store.locks.hold(store.lock_scope, store.config.update_lock_timeout_ms):
            rows = store.read_rows()
            plan = self._plan(rows, max_rows)
            if plan.edits:
                touched = {a.row for a in plan.actions}
                ids = [cell_key(r, "id") for r in rows if r.row_number in touched]
                emails = [str(r.cell(COL_EMAIL)) for r in rows if r.row_number in touched]
                emails += [str(a.new) for a in plan.actions if a.field == "email"]
                try:
                    store.io.batch_update(plan.edits)
                finally:
                    store.cache.invalidate(ids=ids, emails=emails)
            plan.applied = True
        logger.info(
            "Repaired %d row(s), %d left for a later pass", plan.rows_affected, plan.rows_skipped
        )
        return plan

    def suggest(
        self, query: str, *, limit: int = 5, min_similarity: float = 0.5
    ) -> list[FuzzyMatch]:
        """Closest emails and ids to ``query``, for when an exact lookup misses."""
        rows = self.store.read_rows()
        candidates = [str(r.cell(COL_EMAIL)).strip() for r in rows]
        candidates += [cell_key(r, "id") for r in rows]
        return fuzzy_match(query, candidates, limit=limit, min_similarity=min_similarity)

    def flush_cache(self) -> int:
        """Retire every cached record. Returns the new cache generation."""
        return self.store.cache.flush()
