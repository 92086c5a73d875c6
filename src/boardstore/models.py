"""Record and result types for boardstore."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def normalize_email(email: str) -> str:
    return str(email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(str(email or "")))


class UserRecord(BaseModel):
    """One user row: two keys, an active flag and the config document."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str
    active: bool = True
    document: dict[str, Any] = Field(default_factory=dict)
    last_modified: datetime | None = Field(default=None, alias="lastModified")

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email)

    @property
    def is_published(self) -> bool:
        return bool(self.document.get("isPublished", False))


@dataclass
class RawRow:
    """A data row as stored, with its 1-based, header-inclusive row number."""

    row_number: int
    values: list[Any]

    def cell(self, index: int) -> Any:
        return self.values[index] if index < len(self.values) else ""


@dataclass
class ScanResult(Generic[T]):
    """Outcome of a chunked table scan. ``truncated`` is a valid, non-error outcome."""

    rows: list[T]
    processed_rows: int
    total_rows: int
    truncated: bool = False
    elapsed_s: float = 0.0


@dataclass
class UserListing:
    """Result of get_all_users."""

    users: list[UserRecord]
    processed_rows: int
    total_rows: int
    truncated: bool = False


@dataclass
class DeleteResult:
    user_id: str
    email: str
    deleted_rows: int
    delete_type: str
    reason: str
    audit_logged: bool = True


@dataclass
class AuditEntry:
    timestamp: str
    executor_email: str
    target_id: str
    target_email: str
    reason: str
    delete_type: str

    def to_row(self) -> list[Any]:
        return [
            self.timestamp,
            self.executor_email,
            self.target_id,
            self.target_email,
            self.reason,
            self.delete_type,
        ]


@dataclass
class MutationTrace:
    """State transitions of one mutating call, in order."""

    operation: str
    states: list[str] = field(default_factory=list)
    error: str | None = None

    def enter(self, state: str) -> None:
        self.states.append(state)

    @property
    def final_state(self) -> str | None:
        return self.states[-1] if self.states else None
