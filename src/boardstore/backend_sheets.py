"""Google Sheets v4 REST backend."""

from __future__ import annotations

import logging
from typing import Any, Callable
from urllib.parse import quote

import requests

from boardstore.backend import CellEdit, StructuralEdit, column_letter, quote_sheet
from boardstore.config import BoardStoreConfig
from boardstore.errors import PermanentBackendError, TransientBackendError
from boardstore.rows import WIDTH

logger = logging.getLogger(__name__)

SHEETS_API_ROOT = "https://sheets.googleapis.com/v4/spreadsheets"

TRANSIENT_STATUSES = frozenset({401, 408, 429, 500, 502, 503, 504})


def classify_status(operation: str, status: int, detail: str) -> Exception:
    """Map an HTTP failure status to the transient/permanent taxonomy."""
    if status in TRANSIENT_STATUSES:
        return TransientBackendError(operation, detail, status=status)
    return PermanentBackendError(operation, detail, status=status)


class SheetsBackend:
    """Spreadsheet-backed table store speaking the Sheets REST API.

    Retries are not done here; the batch layer owns the retry policy.
    """

    def __init__(
        self,
        *,
        spreadsheet_id: str,
        token_provider: Callable[[], str],
        config: BoardStoreConfig,
        session: requests.Session | None = None,
        api_root: str = SHEETS_API_ROOT,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self._token_provider = token_provider
        self._timeout = config.request_timeout_s
        self._session = session or requests.Session()
        self._base = f"{api_root}/{spreadsheet_id}"
        self._sheet_ids: dict[str, int] = {}

    # --- HTTP ---

    def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        params: Any = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._token_provider()}"}
        try:
            resp = self._session.request(
                method, url, params=params, json=body, headers=headers, timeout=self._timeout
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientBackendError(operation, str(e)) from e
        except requests.RequestException as e:
            raise PermanentBackendError(operation, str(e)) from e

        if resp.status_code != 200:
            logger.debug("Sheets %s returned HTTP %s", operation, resp.status_code)
            raise classify_status(operation, resp.status_code, resp.text[:500])
        try:
            data = resp.json()
        except ValueError as e:
            raise PermanentBackendError(operation, f"Response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise PermanentBackendError(operation, "Response is not a JSON object")
        return data

    # --- Values ---

    def batch_get(self, ranges: list[str]) -> list[list[list[Any]]]:
        params = [("ranges", r) for r in ranges]
        params.append(("valueRenderOption", "UNFORMATTED_VALUE"))
        params.append(("majorDimension", "ROWS"))
        data = self._request("batch_get", "GET", f"{self._base}/values:batchGet", params=params)
        value_ranges = data.get("valueRanges", [])
        if len(value_ranges) != len(ranges):
            raise PermanentBackendError(
                "batch_get", f"Asked for {len(ranges)} ranges, got {len(value_ranges)}"
            )
        return [vr.get("values", []) for vr in value_ranges]

    def batch_update(self, edits: list[CellEdit]) -> int:
        if not edits:
            return 0
        body = {
            "valueInputOption": "RAW",
            "data": [{"range": e.range_a1, "values": [list(e.values)]} for e in edits],
        }
        data = self._request("batch_update", "POST", f"{self._base}/values:batchUpdate", body=body)
        return int(data.get("totalUpdatedCells", 0))

    def append(self, sheet: str, rows: list[list[Any]]) -> None:
        target = quote(f"{quote_sheet(sheet)}!A1", safe="")
        self._request(
            "append",
            "POST",
            f"{self._base}/values/{target}:append",
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            body={"values": [list(r) for r in rows]},
        )

    def count_rows(self, sheet: str) -> int:
        # Every schema column, so rows with blank keys still count.
        return len(self.batch_get([f"{quote_sheet(sheet)}!A:{column_letter(WIDTH)}"])[0])

    # --- Spreadsheet structure ---

    def _load_sheet_ids(self) -> dict[str, int]:
        data = self._request(
            "list_sheets",
            "GET",
            self._base,
            params={"fields": "sheets.properties(sheetId,title)"},
        )
        ids: dict[str, int] = {}
        for sheet in data.get("sheets", []):
            props = sheet.get("properties", {})
            if "title" in props:
                ids[str(props["title"])] = int(props.get("sheetId", 0))
        self._sheet_ids = ids
        return ids

    def _sheet_id(self, title: str) -> int:
        if title not in self._sheet_ids:
            self._load_sheet_ids()
        try:
            return self._sheet_ids[title]
        except KeyError:
            raise PermanentBackendError(
                "structural_edit", f"sheet '{title}' not found", status=400
            ) from None

    def list_sheets(self) -> list[str]:
        return list(self._load_sheet_ids())

    def _to_api_request(self, req: StructuralEdit) -> dict[str, Any]:
        if req.kind == "add_sheet":
            return {"addSheet": {"properties": {"title": req.sheet}}}
        dim_range = {
            "sheetId": self._sheet_id(req.sheet),
            "dimension": "ROWS",
            "startIndex": req.start_row - 1,
            "endIndex": req.start_row - 1 + req.count,
        }
        if req.kind == "delete_rows":
            return {"deleteDimension": {"range": dim_range}}
        if req.kind == "insert_rows":
            return {"insertDimension": {"range": dim_range, "inheritFromBefore": False}}
        raise PermanentBackendError("structural_edit", f"Unknown request kind '{req.kind}'")

    def structural_edit(self, edits: list[StructuralEdit]) -> None:
        body = {"requests": [self._to_api_request(r) for r in edits]}
        self._request("structural_edit", "POST", f"{self._base}:batchUpdate", body=body)
        headers = [r for r in edits if r.kind == "add_sheet" and r.header]
        if any(r.kind == "add_sheet" for r in edits):
            self._sheet_ids.clear()
        if headers:
            self.batch_update(
                [CellEdit(sheet=r.sheet, row=1, col=1, values=list(r.header)) for r in headers]
            )

    def backend_info(self) -> dict[str, Any]:
        return {"backend": "sheets", "spreadsheet_id": self.spreadsheet_id}

    def close(self) -> None:
        self._session.close()
