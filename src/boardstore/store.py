"""Record store: the public user operations over a tabular backend."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import ExitStack
from datetime import datetime
from typing import Any, Callable, TypeVar

from boardstore.access import Caller, is_self, require_admin, require_read, require_write
from boardstore.audit import AuditLog
from boardstore.backend import (
    CellEdit,
    StructuralEdit,
    TabularBackend,
    a1_range,
    open_backend,
    parse_backend_target,
    quote_sheet,
)
from boardstore.batch_io import BatchIO
from boardstore.cache import CacheProtocol, MemoryCache, RecordCache
from boardstore.config import BoardStoreConfig
from boardstore.document import (
    DOCUMENT_VERSION,
    VERSION_KEY,
    deep_merge,
    default_document,
    serialize_document,
    upgrade_document,
)
from boardstore.errors import (
    AccessDeniedError,
    BoardStoreError,
    ConflictError,
    DuplicateKeyError,
    LockTimeoutError,
    NotFoundError,
    SchemaMismatchError,
    ValidationError,
    VerificationError,
)
from boardstore.locking import LockManager, file_lock_factory
from boardstore.models import (
    AuditEntry,
    DeleteResult,
    MutationTrace,
    RawRow,
    UserListing,
    UserRecord,
    is_valid_email,
    normalize_email,
)
from boardstore.rows import (
    COL_ACTIVE,
    HEADERS,
    WIDTH,
    cell_key,
    check_header,
    format_timestamp,
    locate,
    locate_all,
    parse_bool,
    parse_timestamp,
    raw_rows,
    to_record,
    to_row,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

UPDATABLE_FIELDS = frozenset({"email", "active", "document"})


def _spreadsheet_key(spreadsheet_id: str) -> str:
    return f"lookup:spreadsheetId:{spreadsheet_id}"


def _spreadsheet_ids(*records: UserRecord | None) -> list[str]:
    out = []
    for record in records:
        if record is not None:
            sid = record.document.get("spreadsheetId")
            if isinstance(sid, str) and sid:
                out.append(sid)
    return out


class UserStore:
    """User records kept in one sheet of a tabular backend.

    Cache, lock manager and clock are injected; nothing here is global.
    Mutations run the traced sequence read, validate, write, verify and
    invalidate, under the store lock where required.
    """

    def __init__(
        self,
        backend: TabularBackend,
        *,
        config: BoardStoreConfig | None = None,
        cache: CacheProtocol | None = None,
        locks: LockManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.config = config or BoardStoreConfig()
        self.cache = RecordCache(
            cache if cache is not None else MemoryCache(),
            ttl_s=self.config.cache_ttl_s,
            negative_ttl_s=self.config.negative_cache_ttl_s,
        )
        self.io = BatchIO(backend, self.config, self.cache, sleep=sleep, clock=clock)
        self.locks = locks or LockManager()
        self.audit = AuditLog(self.io, self.config.audit_sheet)
        self.sheet = self.config.users_sheet
        self.last_trace: MutationTrace | None = None
        self.lock_scope = self._resolve_scope()

    def _resolve_scope(self) -> str:
        info = self.backend.backend_info()
        ident = info.get("spreadsheet_id") or info.get("path")
        if not ident:
            ident = f"{info.get('backend')}-{id(self.backend)}"
        return f"boardstore:{ident}:{self.sheet}"

    def close(self) -> None:
        self.backend.close()

    # --- Table access ---

    def initialize(self) -> bool:
        """Create the users sheet and its header if missing. Returns True if created."""
        if self.sheet not in self.io.list_sheets():
            self.io.structural_edit(
                [StructuralEdit(kind="add_sheet", sheet=self.sheet, header=list(HEADERS))]
            )
            logger.info("Created users sheet %s", self.sheet)
            return True
        (header_rows,) = self.io.batch_get([self._header_range()])
        if not header_rows:
            self.io.batch_update([CellEdit(sheet=self.sheet, row=1, col=1, values=list(HEADERS))])
            logger.info("Wrote header to empty users sheet %s", self.sheet)
            return True
        check_header(self.sheet, header_rows[0])
        return False

    def _header_range(self) -> str:
        # Whole first row, so an added column fails the header check.
        return f"{quote_sheet(self.sheet)}!1:1"

    def read_header(self) -> list[Any]:
        (header_rows,) = self.io.batch_get([self._header_range()])
        header = header_rows[0] if header_rows else []
        check_header(self.sheet, header)
        return header

    def read_rows(self) -> list[RawRow]:
        """Fresh snapshot of every data row, header-checked, in one backend call."""
        header_rows, values = self.io.batch_get(
            [self._header_range(), a1_range(self.sheet, 2, 1, None, WIDTH)]
        )
        if not header_rows:
            raise SchemaMismatchError(self.sheet, list(HEADERS), [])
        check_header(self.sheet, header_rows[0])
        return raw_rows(values, first_row=2)

    @staticmethod
    def _row_by_number(rows: list[RawRow], row_number: int) -> RawRow:
        for row in rows:
            if row.row_number == row_number:
                return row
        raise NotFoundError("row", str(row_number))

    # --- Mutation driver ---

    def _run_mutation(
        self,
        operation: str,
        body: Callable[[MutationTrace], T],
        *,
        timeout_ms: int,
        lock: bool = True,
    ) -> T:
        trace = MutationTrace(operation)
        self.last_trace = trace
        trace.enter("IDLE")
        with ExitStack() as stack:
            if lock:
                trace.enter("LOCK_ACQUIRING")
                try:
                    stack.enter_context(self.locks.hold(self.lock_scope, timeout_ms))
                except LockTimeoutError as e:
                    trace.enter("BUSY")
                    trace.error = str(e)
                    raise
                trace.enter("LOCK_HELD")
            try:
                result = body(trace)
            except Exception as e:
                trace.enter("ERROR")
                trace.error = str(e)
                logger.debug("%s failed: %s (states %s)", operation, e, trace.states)
                raise
        if lock:
            trace.enter("LOCK_RELEASED")
        logger.debug("%s states %s", operation, trace.states)
        return result

    def _write_verified(
        self,
        trace: MutationTrace,
        write: Callable[[], Any],
        verify: Callable[[], T],
        invalidate: Callable[[], None],
    ) -> T:
        """Write, read back, invalidate. Invalidation also runs when write or read-back fails."""
        trace.enter("WRITE")
        try:
            write()
        except Exception:
            invalidate()
            raise
        trace.enter("VERIFY")
        try:
            result = verify()
        except Exception:
            invalidate()
            raise
        trace.enter("CACHE_INVALIDATE")
        invalidate()
        return result

    def _invalidate(self, records: list[UserRecord | None]) -> None:
        present = [r for r in records if r is not None]
        self.cache.invalidate(ids=[r.id for r in present], emails=[r.email for r in present])
        for sid in _spreadsheet_ids(*records):
            self.cache.remove_json(_spreadsheet_key(sid))

    # --- Reads ---

    def _find(
        self,
        field: str,
        value: str,
        *,
        caller: Caller | None,
        published_read: bool,
    ) -> UserRecord:
        if not str(value or "").strip():
            raise ValidationError(f"{field} must not be blank")
        cached = self.cache.get(field, value)
        if cached is not None:
            require_read(caller, cached, published_read=published_read)
            return cached
        if self.cache.is_known_missing(field, value):
            raise NotFoundError(field, value)

        rows = self.read_rows()
        try:
            row = self._row_by_number(rows, locate(rows, field, value))
        except NotFoundError:
            self.cache.put_missing(field, value)
            raise
        record = to_record(row)
        self.cache.put(record, fields={"id", field})
        require_read(caller, record, published_read=published_read)
        return record

    def find_user_by_id(
        self, user_id: str, *, caller: Caller | None = None, published_read: bool = False
    ) -> UserRecord:
        return self._find("id", user_id, caller=caller, published_read=published_read)

    def find_user_by_email(
        self, email: str, *, caller: Caller | None = None, published_read: bool = False
    ) -> UserRecord:
        return self._find("email", email, caller=caller, published_read=published_read)

    def find_user_by_spreadsheet_id(
        self, spreadsheet_id: str, *, caller: Caller | None = None, published_read: bool = False
    ) -> UserRecord:
        """Look up the user whose document points at ``spreadsheet_id``."""
        if not str(spreadsheet_id or "").strip():
            raise ValidationError("spreadsheetId must not be blank")
        key = _spreadsheet_key(spreadsheet_id)
        cached = self.cache.get_json(key)
        if isinstance(cached, dict):
            if cached.get("missing"):
                raise NotFoundError("spreadsheetId", spreadsheet_id)
            user_id = cached.get("id")
            if isinstance(user_id, str):
                try:
                    record = self.find_user_by_id(user_id)
                except NotFoundError:
                    record = None
                if record is not None and record.document.get("spreadsheetId") == spreadsheet_id:
                    require_read(caller, record, published_read=published_read)
                    return record
            self.cache.remove_json(key)

        for row in self.read_rows():
            if not cell_key(row, "id"):
                continue
            record = to_record(row)
            if record.document.get("spreadsheetId") == spreadsheet_id:
                self.cache.put_json(key, {"id": record.id}, self.config.cache_ttl_s)
                self.cache.put(record, fields=("id",))
                require_read(caller, record, published_read=published_read)
                return record
        self.cache.put_json(key, {"missing": True}, self.config.negative_cache_ttl_s)
        raise NotFoundError("spreadsheetId", spreadsheet_id)

    def get_all_users(
        self,
        *,
        active_only: bool = False,
        published_only: bool = False,
        budget_s: float | None = None,
        caller: Caller | None = None,
    ) -> UserListing:
        """Scan every user under the scan budget. A truncated listing is not an error."""
        if caller is not None:
            require_admin(caller)
        self.read_header()
        scan = self.io.scan(self.sheet, width=WIDTH, budget_s=budget_s)
        users = []
        for row in scan.rows:
            if not cell_key(row, "id"):
                continue
            record = to_record(row)
            if active_only and not record.active:
                continue
            if published_only and not record.is_published:
                continue
            users.append(record)
        return UserListing(
            users=users,
            processed_rows=scan.processed_rows,
            total_rows=scan.total_rows,
            truncated=scan.truncated,
        )

    # --- Create ---

    def create_user(
        self,
        email: str,
        document: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
        active: bool = True,
    ) -> UserRecord:
        """Append a new user. Email uniqueness is checked under the store lock."""
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise ValidationError(f"Invalid email address: {email!r}")
        if document is not None and not isinstance(document, dict):
            raise ValidationError("document must be a JSON object")
        if not isinstance(active, bool):
            raise ValidationError("active must be a boolean")
        new_id = str(user_id).strip() if user_id is not None else str(uuid.uuid4())
        if not new_id:
            raise ValidationError("id must not be blank")

        now = utcnow()
        doc = deep_merge(default_document(created_at=now.isoformat()), document or {})
        doc = upgrade_document(doc)
        doc[VERSION_KEY] = DOCUMENT_VERSION
        record = UserRecord(
            id=new_id, email=normalized, active=active, document=doc, last_modified=now
        )
        row_values = to_row(record, max_document_chars=self.config.max_document_chars)

        def body(trace: MutationTrace) -> UserRecord:
            trace.enter("READ_CURRENT")
            rows = self.read_rows()

            trace.enter("VALIDATE")
            if locate_all(rows, "id", new_id):
                raise DuplicateKeyError("id", new_id)
            same_email = [row for row in rows if cell_key(row, "email") == normalized]
            if active and any(parse_bool(row.cell(COL_ACTIVE))[0] for row in same_email):
                raise DuplicateKeyError("email", normalized)

            def verify() -> UserRecord:
                fresh = self.read_rows()
                matches = locate_all(fresh, "id", new_id)
                if len(matches) != 1:
                    raise VerificationError(
                        "create_user", f"expected one row for {new_id}, found {len(matches)}"
                    )
                stored = to_record(self._row_by_number(fresh, matches[0]))
                if stored.email != record.email or stored.document != record.document:
                    raise VerificationError(
                        "create_user", f"row for {new_id} does not match what was written"
                    )
                return stored

            return self._write_verified(
                trace,
                lambda: self.io.append(self.sheet, [row_values]),
                verify,
                lambda: self._invalidate([record]),
            )

        created = self._run_mutation(
            "create_user", body, timeout_ms=self.config.create_lock_timeout_ms
        )
        logger.info("Created user %s (%s)", created.id, created.email)
        return created

    # --- Update ---

    def _validate_patch(self, patch: dict[str, Any]) -> None:
        if not isinstance(patch, dict) or not patch:
            raise ValidationError("update must be a non-empty mapping")
        disallowed = sorted(set(patch) - UPDATABLE_FIELDS)
        if disallowed:
            raise ValidationError(
                f"Cannot update field(s) {disallowed}; allowed: {sorted(UPDATABLE_FIELDS)}"
            )
        if "email" in patch and not is_valid_email(normalize_email(patch["email"])):
            raise ValidationError(f"Invalid email address: {patch['email']!r}")
        if "active" in patch and not isinstance(patch["active"], bool):
            raise ValidationError("active must be a boolean")
        if "document" in patch:
            if not isinstance(patch["document"], dict):
                raise ValidationError("document must be a JSON object")
            serialize_document(patch["document"], max_chars=self.config.max_document_chars)

    def update_user(
        self,
        user_id: str,
        patch: dict[str, Any],
        *,
        expected_last_modified: datetime | str | None = None,
        caller: Caller | None = None,
    ) -> UserRecord:
        """Merge ``patch`` into a user.

        ``document`` is deep-merged; ``email`` and ``active`` are replaced.
        With ``expected_last_modified`` the write is refused with
        ConflictError when the stored timestamp differs.
        """
        if not str(user_id or "").strip():
            raise ValidationError("id must not be blank")
        self._validate_patch(patch)
        expected = None
        if expected_last_modified is not None:
            parsed = parse_timestamp(expected_last_modified)
            if parsed is None:
                raise ValidationError(
                    f"expected_last_modified is not a timestamp: {expected_last_modified!r}"
                )
            expected = format_timestamp(parsed)
        lock = self.config.lock_document_updates or "email" in patch or "active" in patch

        def body(trace: MutationTrace) -> UserRecord:
            trace.enter("READ_CURRENT")
            rows = self.read_rows()
            row_number = locate(rows, "id", user_id)
            current = to_record(self._row_by_number(rows, row_number))

            trace.enter("VALIDATE")
            require_write(caller, current)
            if expected is not None:
                actual = format_timestamp(current.last_modified)
                if actual != expected:
                    raise ConflictError(user_id, expected, actual)

            new_email = normalize_email(patch["email"]) if "email" in patch else current.email
            new_active = patch.get("active", current.active)
            email_changed = normalize_email(new_email) != current.normalized_email
            if new_active and (email_changed or not current.active):
                for row in rows:
                    if row.row_number == row_number:
                        continue
                    if cell_key(row, "email") != normalize_email(new_email):
                        continue
                    if parse_bool(row.cell(COL_ACTIVE))[0]:
                        raise DuplicateKeyError("email", new_email)

            document = current.document
            if "document" in patch:
                document = upgrade_document(deep_merge(current.document, patch["document"]))
                document[VERSION_KEY] = DOCUMENT_VERSION
            updated = current.model_copy(
                update={
                    "email": new_email,
                    "active": new_active,
                    "document": document,
                    "last_modified": utcnow(),
                }
            )
            row_values = to_row(updated, max_document_chars=self.config.max_document_chars)

            def verify() -> UserRecord:
                fresh = self.read_rows()
                try:
                    stored = to_record(self._row_by_number(fresh, locate(fresh, "id", user_id)))
                except NotFoundError as e:
                    raise VerificationError(
                        "update_user", f"user {user_id} vanished after write"
                    ) from e
                if (
                    stored.email != updated.email
                    or stored.active != updated.active
                    or stored.document != updated.document
                    or stored.last_modified != updated.last_modified
                ):
                    raise VerificationError(
                        "update_user", f"row for {user_id} does not match what was written"
                    )
                return stored

            return self._write_verified(
                trace,
                lambda: self.io.batch_update(
                    [CellEdit(sheet=self.sheet, row=row_number, col=2, values=row_values[1:])]
                ),
                verify,
                lambda: self._invalidate([current, updated]),
            )

        updated_record = self._run_mutation(
            "update_user", body, timeout_ms=self.config.update_lock_timeout_ms, lock=lock
        )
        logger.info("Updated user %s (%s)", user_id, ", ".join(sorted(patch)))
        return updated_record

    # --- Delete ---

    def _delete(
        self,
        user_id: str,
        caller: Caller,
        reason: str,
        delete_type: str,
    ) -> DeleteResult:
        if not str(user_id or "").strip():
            raise ValidationError("id must not be blank")

        def body(trace: MutationTrace) -> DeleteResult:
            trace.enter("READ_CURRENT")
            rows = self.read_rows()
            numbers = locate_all(rows, "id", user_id)
            if not numbers:
                raise NotFoundError("id", user_id)
            victims = [to_record(self._row_by_number(rows, n)) for n in numbers]
            current = victims[0]

            trace.enter("VALIDATE")
            if delete_type == "self" and not is_self(caller, current):
                raise AccessDeniedError(f"{caller.email} may only delete their own account")

            def verify() -> None:
                remaining = locate_all(self.read_rows(), "id", user_id)
                if remaining:
                    raise VerificationError("delete_user", f"rows {remaining} still hold {user_id}")

            # Bottom-up so earlier deletions do not shift later targets.
            edits = [
                StructuralEdit(kind="delete_rows", sheet=self.sheet, start_row=n, count=1)
                for n in sorted(numbers, reverse=True)
            ]
            self._write_verified(
                trace,
                lambda: self.io.structural_edit(edits),
                verify,
                lambda: self._invalidate(list(victims)),
            )

            entry = AuditEntry(
                timestamp=utcnow().isoformat(),
                executor_email=caller.normalized_email,
                target_id=user_id,
                target_email=current.email,
                reason=reason,
                delete_type=delete_type,
            )
            audit_logged = True
            try:
                self.audit.record(entry)
            except BoardStoreError as e:
                audit_logged = False
                logger.error("User %s deleted but the audit entry was not written: %s", user_id, e)
            return DeleteResult(
                user_id=user_id,
                email=current.email,
                deleted_rows=len(numbers),
                delete_type=delete_type,
                reason=reason,
                audit_logged=audit_logged,
            )

        result = self._run_mutation(
            "delete_user", body, timeout_ms=self.config.delete_lock_timeout_ms
        )
        logger.info(
            "Deleted user %s (%s, %d row(s), by %s)",
            user_id,
            delete_type,
            result.deleted_rows,
            caller.normalized_email,
        )
        return result

    def delete_user_account(self, user_id: str, caller: Caller, reason: str = "") -> DeleteResult:
        """Delete the caller's own account."""
        return self._delete(user_id, caller, reason or "self-service deletion", "self")

    def delete_user_account_by_admin(
        self, user_id: str, caller: Caller, reason: str
    ) -> DeleteResult:
        require_admin(caller)
        if not str(reason or "").strip():
            raise ValidationError("An admin deletion needs a reason")
        return self._delete(user_id, caller, reason.strip(), "admin")


def open_store(
    uri: str,
    *,
    config: BoardStoreConfig | None = None,
    token_provider: Callable[[], str] | None = None,
    cache: CacheProtocol | None = None,
    locks: LockManager | None = None,
) -> UserStore:
    """Open a store on the backend named by ``uri``.

    File-backed stores default to lock-file locks so separate processes
    on one workbook exclude each other.
    """
    config = config or BoardStoreConfig()
    if locks is None:
        target = parse_backend_target(uri)
        if target.backend == "file" and target.path:
            locks = LockManager(file_lock_factory(target.path))
    backend = open_backend(uri, config=config, token_provider=token_provider)
    return UserStore(backend, config=config, cache=cache, locks=locks)
