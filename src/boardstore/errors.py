"""Structured error types for boardstore."""

from __future__ import annotations


class BoardStoreError(Exception):
    """Base error for all boardstore errors."""


class BackendError(BoardStoreError):
    """Raised when a call against the tabular backend fails."""

    def __init__(self, operation: str, detail: str, *, status: int | None = None) -> None:
        self.operation = operation
        self.detail = detail
        self.status = status
        code = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"Backend error during {operation}{code}: {detail}")


class TransientBackendError(BackendError):
    """Rate limit, expired auth, unavailable backend or timeout. Safe to retry."""


class PermanentBackendError(BackendError):
    """Malformed request or unexpected payload. Retrying would hide a bug."""


class SchemaMismatchError(PermanentBackendError):
    """Raised when the header row does not match the expected column layout."""

    def __init__(self, sheet: str, expected: list[str], actual: list[str]) -> None:
        self.sheet = sheet
        self.expected = expected
        self.actual = actual
        super().__init__(
            "read_header",
            f"sheet '{sheet}' has header {actual}, expected {expected}",
        )


class CircuitOpenError(BackendError):
    """Raised while the rate-limit circuit breaker is open."""

    def __init__(self, operation: str, retry_after_s: float) -> None:
        self.retry_after_s = retry_after_s
        super().__init__(
            operation,
            f"circuit open after repeated rate limiting; retry in {retry_after_s:.0f}s",
        )


class NotFoundError(BoardStoreError):
    """Raised when no record matches the requested key."""

    def __init__(self, field: str, value: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"No user with {field}={value!r}")


class ValidationError(BoardStoreError):
    """Raised when input is rejected before any backend call is made."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class DuplicateKeyError(ValidationError):
    """Raised when a create or update would violate a unique key."""

    def __init__(self, field: str, value: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"A user with {field}={value!r} already exists")


class LockTimeoutError(BoardStoreError):
    """Raised when a scoped lock cannot be acquired within its bound."""

    def __init__(self, scope: str, timeout_ms: int) -> None:
        self.scope = scope
        self.timeout_ms = timeout_ms
        super().__init__(f"Could not acquire lock '{scope}' within {timeout_ms}ms")


class VerificationError(BoardStoreError):
    """Raised when a write landed but the read-back does not confirm it."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Read-back verification failed for {operation}: {detail}")


class ConflictError(BoardStoreError):
    """Raised when an optimistic concurrency token no longer matches."""

    def __init__(self, user_id: str, expected: str, actual: str) -> None:
        self.user_id = user_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"User {user_id} was modified concurrently "
            f"(expected lastModified {expected}, found {actual})"
        )


class AccessDeniedError(BoardStoreError):
    """Raised when the caller may not perform an operation on a record."""


class MigrationError(BoardStoreError):
    """Raised when a document cannot be upgraded to the current version."""


class MissingUpgraderError(MigrationError):
    """Raised when the upgrader chain has a gap."""

    def __init__(self, missing: list[int]) -> None:
        self.missing = missing
        super().__init__(f"Missing document upgraders for versions {missing}")
