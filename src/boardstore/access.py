"""Caller identity and per-record access rules."""

from __future__ import annotations

from dataclasses import dataclass

from boardstore.errors import AccessDeniedError
from boardstore.models import UserRecord, normalize_email


@dataclass(frozen=True)
class Caller:
    """A verified caller identity, as returned by the identity provider."""

    email: str
    is_admin: bool = False

    @classmethod
    def resolve(cls, email: str, admin_emails: list[str]) -> Caller:
        normalized = normalize_email(email)
        admins = {normalize_email(e) for e in admin_emails}
        return cls(email=normalized, is_admin=normalized in admins)

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email)


def is_self(caller: Caller, record: UserRecord) -> bool:
    return bool(caller.normalized_email) and caller.normalized_email == record.normalized_email


def can_read(caller: Caller | None, record: UserRecord, *, published_read: bool = False) -> bool:
    """Admins read everything, users read their own record.

    With ``published_read`` anyone may read a published, active record.
    ``caller=None`` is a trusted internal call.
    """
    if caller is None or caller.is_admin or is_self(caller, record):
        return True
    return published_read and record.active and record.is_published


def can_write(caller: Caller | None, record: UserRecord) -> bool:
    return caller is None or caller.is_admin or is_self(caller, record)


def require_read(
    caller: Caller | None, record: UserRecord, *, published_read: bool = False
) -> None:
    if not can_read(caller, record, published_read=published_read):
        who = caller.email if caller else "?"
        raise AccessDeniedError(f"{who} may not read user {record.id}")


def require_write(caller: Caller | None, record: UserRecord) -> None:
    if not can_write(caller, record):
        who = caller.email if caller else "?"
        raise AccessDeniedError(f"{who} may not modify user {record.id}")


def require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise AccessDeniedError(f"{caller.email} is not an administrator")
