"""Tabular backend contract, A1 range helpers and local backends."""

from __future__ import annotations

import copy
import json
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Protocol, runtime_checkable
from urllib.parse import urlparse

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from boardstore.config import BoardStoreConfig
from boardstore.errors import PermanentBackendError, TransientBackendError

# --- A1 notation ---

_A1_CELL = re.compile(r"^([A-Za-z]*)(\d*)$")
_PLAIN_SHEET = re.compile(r"^[A-Za-z0-9_]+$")


def column_letter(index: int) -> str:
    """1 -> A, 26 -> Z, 27 -> AA."""
    if index < 1:
        raise ValueError(f"Column index must be >= 1, got {index}")
    letters = ""
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def column_index(letters: str) -> int:
    result = 0
    for ch in letters.upper():
        result = result * 26 + (ord(ch) - ord("A") + 1)
    return result


def quote_sheet(sheet: str) -> str:
    if _PLAIN_SHEET.match(sheet):
        return sheet
    return "'" + sheet.replace("'", "''") + "'"


def a1_range(
    sheet: str,
    start_row: int,
    start_col: int = 1,
    end_row: int | None = None,
    end_col: int | None = None,
) -> str:
    """Build an A1 range. ``end_row=None`` leaves the range open to the last row."""
    start = f"{column_letter(start_col)}{start_row}"
    end_col = end_col if end_col is not None else start_col
    end = f"{column_letter(end_col)}{end_row if end_row is not None else ''}"
    return f"{quote_sheet(sheet)}!{start}:{end}"


@dataclass(frozen=True)
class GridRange:
    """A parsed A1 range. ``None`` bounds are open."""

    sheet: str
    start_row: int = 1
    start_col: int = 1
    end_row: int | None = None
    end_col: int | None = None


def parse_a1(range_a1: str) -> GridRange:
    """Parse ``Sheet``, ``Sheet!A1``, ``Sheet!A2:E`` or ``'My Sheet'!A:A``."""
    if "!" in range_a1:
        sheet_part, cells = range_a1.rsplit("!", 1)
    else:
        sheet_part, cells = range_a1, ""
    if sheet_part.startswith("'") and sheet_part.endswith("'") and len(sheet_part) >= 2:
        sheet = sheet_part[1:-1].replace("''", "'")
    else:
        sheet = sheet_part
    if not sheet:
        raise PermanentBackendError("parse_range", f"Unable to parse range: {range_a1}")
    if not cells:
        return GridRange(sheet=sheet)

    start_s, _, end_s = cells.partition(":")
    m_start = _A1_CELL.match(start_s)
    m_end = _A1_CELL.match(end_s) if end_s else m_start
    if m_start is None or m_end is None or not (start_s.strip()):
        raise PermanentBackendError("parse_range", f"Unable to parse range: {range_a1}")

    start_col = column_index(m_start.group(1)) if m_start.group(1) else 1
    start_row = int(m_start.group(2)) if m_start.group(2) else 1
    end_col = column_index(m_end.group(1)) if m_end.group(1) else None
    if m_end.group(2):
        end_row: int | None = int(m_end.group(2))
    elif not end_s and m_start.group(2):
        end_row = start_row
    else:
        end_row = None
    return GridRange(
        sheet=sheet, start_row=start_row, start_col=start_col, end_row=end_row, end_col=end_col
    )


# --- Request types ---


@dataclass(frozen=True)
class CellEdit:
    """Write ``values`` into one row starting at (row, col), both 1-based."""

    sheet: str
    row: int
    col: int
    values: list[Any]

    @property
    def range_a1(self) -> str:
        return a1_range(self.sheet, self.row, self.col, self.row, self.col + len(self.values) - 1)


@dataclass(frozen=True)
class StructuralEdit:
    """A row-count or sheet-count change.

    kind is one of ``delete_rows``, ``insert_rows`` or ``add_sheet``.
    ``start_row`` is 1-based; ``header`` seeds a new sheet's first row.
    """

    kind: str
    sheet: str
    start_row: int = 0
    count: int = 0
    header: list[Any] = field(default_factory=list)


STRUCTURAL_KINDS = frozenset({"delete_rows", "insert_rows", "add_sheet"})


@runtime_checkable
class TabularBackend(Protocol):
    """Range-addressed, transaction-less spreadsheet contract."""

    def batch_get(self, ranges: list[str]) -> list[list[list[Any]]]: ...

    def batch_update(self, edits: list[CellEdit]) -> int: ...

    def append(self, sheet: str, rows: list[list[Any]]) -> None: ...

    def structural_edit(self, requests: list[StructuralEdit]) -> None: ...

    def list_sheets(self) -> list[str]: ...

    def count_rows(self, sheet: str) -> int: ...

    def backend_info(self) -> dict[str, Any]: ...

    def close(self) -> None: ...


def _trim_row(row: list[Any]) -> list[Any]:
    end = len(row)
    while end and row[end - 1] in ("", None):
        end -= 1
    return row[:end]


def _trim_rows(rows: list[list[Any]]) -> list[list[Any]]:
    end = len(rows)
    while end and not _trim_row(rows[end - 1]):
        end -= 1
    return rows[:end]


class InMemoryBackend:
    """Process-local workbook with Sheets-like value semantics.

    Reads drop trailing empty cells and rows the way the Sheets API does.
    """

    def __init__(self, sheets: dict[str, list[list[Any]]] | None = None) -> None:
        self._lock = threading.RLock()
        self._sheets: dict[str, list[list[Any]]] = copy.deepcopy(sheets) if sheets else {}
        self.calls: dict[str, int] = {}

    def _count(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            yield

    def _sheet(self, name: str, operation: str) -> list[list[Any]]:
        try:
            return self._sheets[name]
        except KeyError:
            raise PermanentBackendError(
                operation, f"Unable to parse range: sheet '{name}' not found", status=400
            ) from None

    def _read(self, grid: GridRange) -> list[list[Any]]:
        rows = _trim_rows(self._sheet(grid.sheet, "batch_get"))
        last = len(rows) if grid.end_row is None else min(grid.end_row, len(rows))
        out: list[list[Any]] = []
        for r in range(grid.start_row, last + 1):
            row = rows[r - 1]
            stop = len(row) if grid.end_col is None else grid.end_col
            out.append(_trim_row(list(row[grid.start_col - 1 : stop])))
        return _trim_rows(out)

    def batch_get(self, ranges: list[str]) -> list[list[list[Any]]]:
        with self._guard():
            self._count("batch_get")
            grids = [parse_a1(r) for r in ranges]
            return [copy.deepcopy(self._read(g)) for g in grids]

    def batch_update(self, edits: list[CellEdit]) -> int:
        with self._guard():
            self._count("batch_update")
            for edit in edits:
                self._sheet(edit.sheet, "batch_update")
            updated = 0
            for edit in edits:
                rows = self._sheets[edit.sheet]
                while len(rows) < edit.row:
                    rows.append([])
                row = rows[edit.row - 1]
                needed = edit.col - 1 + len(edit.values)
                if len(row) < needed:
                    row.extend([""] * (needed - len(row)))
                for offset, value in enumerate(edit.values):
                    row[edit.col - 1 + offset] = copy.deepcopy(value)
                updated += len(edit.values)
            self._after_write()
            return updated

    def append(self, sheet: str, rows: list[list[Any]]) -> None:
        with self._guard():
            self._count("append")
            target = self._sheet(sheet, "append")
            trimmed = _trim_rows(target)
            del target[len(trimmed) :]
            target.extend(copy.deepcopy(list(r)) for r in rows)
            self._after_write()

    def structural_edit(self, requests: list[StructuralEdit]) -> None:
        with self._guard():
            self._count("structural_edit")
            staged = copy.deepcopy(self._sheets)
            for req in requests:
                if req.kind not in STRUCTURAL_KINDS:
                    raise PermanentBackendError(
                        "structural_edit", f"Unknown request kind '{req.kind}'", status=400
                    )
                if req.kind == "add_sheet":
                    if req.sheet in staged:
                        raise PermanentBackendError(
                            "structural_edit",
                            f"A sheet with the name '{req.sheet}' already exists",
                            status=400,
                        )
                    staged[req.sheet] = [list(req.header)] if req.header else []
                    continue
                if req.sheet not in staged:
                    raise PermanentBackendError(
                        "structural_edit", f"sheet '{req.sheet}' not found", status=400
                    )
                rows = staged[req.sheet]
                if req.start_row < 1 or req.count < 1:
                    raise PermanentBackendError(
                        "structural_edit",
                        f"Invalid row span {req.start_row}+{req.count}",
                        status=400,
                    )
                if req.kind == "delete_rows":
                    if req.start_row + req.count - 1 > len(rows):
                        raise PermanentBackendError(
                            "structural_edit",
                            f"Rows {req.start_row}..{req.start_row + req.count - 1} out of bounds",
                            status=400,
                        )
                    del rows[req.start_row - 1 : req.start_row - 1 + req.count]
                else:
                    at = min(req.start_row - 1, len(rows))
                    rows[at:at] = [[] for _ in range(req.count)]
            self._sheets = staged
            self._after_write()

    def list_sheets(self) -> list[str]:
        with self._guard():
            return list(self._sheets)

    def count_rows(self, sheet: str) -> int:
        with self._guard():
            self._count("count_rows")
            return len(_trim_rows(self._sheet(sheet, "count_rows")))

    def snapshot(self) -> dict[str, list[list[Any]]]:
        with self._guard():
            return copy.deepcopy(self._sheets)

    def backend_info(self) -> dict[str, Any]:
        with self._guard():
            return {
                "backend": "memory",
                "sheets": {name: len(_trim_rows(rows)) for name, rows in self._sheets.items()},
            }

    def _after_write(self) -> None:
        """Hook for persistent subclasses."""

    def close(self) -> None:
        pass


def _file_stamp(path: str) -> tuple[int, int, int] | None:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_ino, st.st_mtime_ns, st.st_size)


class JsonFileBackend(InMemoryBackend):
    """InMemoryBackend persisted to a JSON workbook file.

    Every call holds ``<path>.lock`` and first reloads the workbook if the
    file changed since this handle last read or wrote it, so several
    handles (and processes) on one path see each other's writes.
    """

    def __init__(self, path: str, *, lock_timeout_s: float = 30.0) -> None:
        super().__init__()
        self.path = path
        self.lock_timeout_s = lock_timeout_s
        self._file_lock = FileLock(f"{path}.lock", timeout=lock_timeout_s)
        self._stamp: tuple[int, int, int] | None = None
        with self._guard():
            pass

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            try:
                self._file_lock.acquire()
            except FileLockTimeout as e:
                raise TransientBackendError(
                    "file_lock", f"Timed out after {self.lock_timeout_s}s waiting for {e.lock_file}"
                ) from e
            try:
                self._reload_if_changed()
                yield
            finally:
                self._file_lock.release()

    def _reload_if_changed(self) -> None:
        stamp = _file_stamp(self.path)
        if stamp == self._stamp:
            return
        sheets: dict[str, list[list[Any]]] = {}
        if stamp is not None:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict) or not isinstance(data.get("sheets", {}), dict):
                raise PermanentBackendError("open_backend", f"'{self.path}' is not a workbook file")
            sheets = data.get("sheets", {})
        self._sheets = sheets
        self._stamp = stamp

    def _after_write(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        # A failed write leaves memory ahead of disk; force a reload next call.
        self._stamp = (-1, -1, -1)
        fd, tmp = tempfile.mkstemp(prefix=".boardstore-", dir=directory)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"sheets": self._sheets}, f, ensure_ascii=False, default=str)
        os.replace(tmp, self.path)
        self._stamp = _file_stamp(self.path)

    def backend_info(self) -> dict[str, Any]:
        info = super().backend_info()
        info["backend"] = "file"
        info["path"] = self.path
        return info


# --- Backend targets ---


@dataclass(frozen=True)
class BackendTarget:
    """Resolved backend binding from a URI."""

    backend: str
    uri: str
    path: str | None = None
    spreadsheet_id: str | None = None


def parse_backend_target(uri: str) -> BackendTarget:
    """Resolve ``memory://``, ``file:///path.json`` or ``sheets://<spreadsheet-id>``."""
    parsed = urlparse(uri)
    if parsed.scheme == "memory":
        return BackendTarget(backend="memory", uri=uri)
    if parsed.scheme == "file":
        path = f"{parsed.netloc}{parsed.path}" if parsed.netloc else parsed.path
        if not path:
            raise PermanentBackendError("parse_backend_uri", f"Invalid file URI: {uri}")
        return BackendTarget(backend="file", uri=uri, path=path)
    if parsed.scheme == "sheets":
        spreadsheet_id = parsed.netloc or parsed.path.strip("/")
        if not spreadsheet_id:
            raise PermanentBackendError("parse_backend_uri", f"Invalid sheets URI: {uri}")
        return BackendTarget(backend="sheets", uri=uri, spreadsheet_id=spreadsheet_id)
    raise PermanentBackendError(
        "parse_backend_uri", f"Unsupported backend URI scheme '{parsed.scheme}' for '{uri}'"
    )


def open_backend(
    uri: str,
    *,
    config: BoardStoreConfig | None = None,
    token_provider: Callable[[], str] | None = None,
) -> TabularBackend:
    """Open a backend from its URI."""
    target = parse_backend_target(uri)
    if target.backend == "memory":
        return InMemoryBackend()
    if target.backend == "file":
        assert target.path is not None
        return JsonFileBackend(target.path)
    from boardstore.backend_sheets import SheetsBackend

    assert target.spreadsheet_id is not None
    if token_provider is None:
        raise PermanentBackendError(
            "open_backend", "sheets backends need an access token provider"
        )
    return SheetsBackend(
        spreadsheet_id=target.spreadsheet_id,
        token_provider=token_provider,
        config=config or BoardStoreConfig(),
    )


__all__ = [
    "TabularBackend",
    "InMemoryBackend",
    "JsonFileBackend",
    "CellEdit",
    "StructuralEdit",
    "GridRange",
    "BackendTarget",
    "a1_range",
    "parse_a1",
    "column_letter",
    "column_index",
    "parse_backend_target",
    "open_backend",
]
