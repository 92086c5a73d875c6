"""Bounded-wait cooperative locks: in-process, lock-file and S3 lease."""

from __future__ import annotations

import json
import logging
import random
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol, TypeVar, runtime_checkable

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, ParamValidationError
from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from boardstore.config import BoardStoreConfig
from boardstore.errors import BackendError, LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class LockHandle(Protocol):
    """A named lock that can be tried with a bounded wait and released."""

    def acquire(self, timeout_ms: int) -> bool: ...

    def release(self) -> None: ...


# --- In-process locks ---

_registry_guard = threading.Lock()
_registry: dict[str, threading.Lock] = {}


def _named_mutex(scope: str) -> threading.Lock:
    with _registry_guard:
        mutex = _registry.get(scope)
        if mutex is None:
            mutex = threading.Lock()
            _registry[scope] = mutex
        return mutex


class LocalLock:
    """Process-wide mutex keyed by scope. Two handles on one scope share it."""

    def __init__(self, scope: str) -> None:
        self.scope = scope
        self._mutex = _named_mutex(scope)

    def acquire(self, timeout_ms: int) -> bool:
        return self._mutex.acquire(timeout=max(0, timeout_ms) / 1000.0)

    def release(self) -> None:
        self._mutex.release()


# --- File locks ---


class FileMutexLock:
    """Mutex shared by every process that opens the same lock file.

    The in-process scope mutex is taken first, so threads of one process
    queue on it instead of polling the lock file.
    """

    def __init__(self, scope: str, lock_path: str) -> None:
        self.scope = scope
        self.lock_path = lock_path
        self._local = LocalLock(scope)
        self._file = FileLock(lock_path)

    def acquire(self, timeout_ms: int) -> bool:
        deadline = time.monotonic() + max(0, timeout_ms) / 1000.0
        if not self._local.acquire(timeout_ms):
            return False
        try:
            self._file.acquire(timeout=max(0.0, deadline - time.monotonic()))
        except FileLockTimeout:
            self._local.release()
            return False
        return True

    def release(self) -> None:
        try:
            self._file.release()
        finally:
            self._local.release()


def file_lock_factory(book_path: str) -> Callable[[str], LockHandle]:
    """Locks for a file-backed workbook, kept in ``<book>.mutate.lock``.

    The backend itself guards single calls with ``<book>.lock``; this lock
    spans a whole read-validate-write sequence.
    """
    lock_path = f"{book_path}.mutate.lock"

    def factory(scope: str) -> LockHandle:
        return FileMutexLock(scope, lock_path)

    return factory


# --- S3 lease locks ---


class _PreconditionFailed(Exception):
    pass


def _error_code(err: Exception) -> str:
    if isinstance(err, ClientError):
        return str(err.response.get("Error", {}).get("Code", ""))
    return ""


def make_s3_client(config: BoardStoreConfig) -> Any:
    return boto3.client(
        "s3",
        region_name=config.s3_region,
        endpoint_url=config.s3_endpoint_url,
        config=BotoConfig(
            connect_timeout=config.request_timeout_s,
            read_timeout=config.request_timeout_s,
            retries={"max_attempts": 5, "mode": "standard"},
        ),
    )


class S3LeaseLock:
    """Cross-process lease held as a JSON object in S3.

    Acquire creates the lease with ``IfNoneMatch="*"``. An expired lease is
    taken over with ``IfMatch`` on its etag; release deletes with ``IfMatch``
    so a lease taken over by someone else is never removed.

    Leases are not renewed. ``lease_ms`` must exceed the longest critical
    section: one read, one write and one read-back, each with its retries.
    A holder that outlives its lease logs a warning on release, since
    another process may have taken the lease over in the meantime.
    """

    def __init__(
        self,
        scope: str,
        *,
        client: Any,
        bucket: str,
        prefix: str = "boardstore/locks",
        lease_ms: int = 30000,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.scope = scope
        self.bucket = bucket
        self.key = f"{prefix.strip('/')}/{scope}.json"
        self.lease_ms = lease_ms
        self.owner_id = uuid.uuid4().hex
        self._s3 = client
        self._clock = clock
        self._sleep = sleep
        self._expires_at: float | None = None

    def _lease_payload(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "owner_id": self.owner_id,
            "scope": self.scope,
            "acquired_at": now,
            "expires_at": now + self.lease_ms / 1000.0,
        }

    def _put(self, payload: dict[str, Any], **conditions: str) -> None:
        body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=self.key,
                Body=body,
                ContentType="application/json",
                **conditions,
            )
        except ParamValidationError as e:
            raise BackendError(
                "acquire_lock", "S3 endpoint does not support conditional writes"
            ) from e
        except ClientError as e:
            if _error_code(e) in {"PreconditionFailed", "412"}:
                raise _PreconditionFailed() from e
            raise BackendError("acquire_lock", str(e)) from e
        self._expires_at = float(payload["expires_at"])

    def _current(self) -> tuple[dict[str, Any] | None, str | None]:
        try:
            resp = self._s3.get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if _error_code(e) in {"NoSuchKey", "404", "NotFound"}:
                return None, None
            raise BackendError("read_lock", str(e)) from e
        try:
            lease = json.loads(resp["Body"].read().decode("utf-8"))
        except ValueError:
            lease = {}
        etag = resp.get("ETag")
        return lease if isinstance(lease, dict) else {}, etag if isinstance(etag, str) else None

    def _try_create(self) -> bool:
        try:
            self._put(self._lease_payload(), IfNoneMatch="*")
        except _PreconditionFailed:
            return False
        return True

    def _try_takeover(self) -> bool:
        lease, etag = self._current()
        if lease is None or etag is None:
            return False
        try:
            expires_at = float(lease["expires_at"])
        except (KeyError, TypeError, ValueError):
            expires_at = 0.0
        if self._clock() < expires_at:
            return False
        try:
            self._put(self._lease_payload(), IfMatch=etag)
        except _PreconditionFailed:
            return False
        logger.warning("Took over expired lock %s from %s", self.scope, lease.get("owner_id"))
        return True

    def acquire(self, timeout_ms: int) -> bool:
        deadline = self._clock() + max(0, timeout_ms) / 1000.0
        while True:
            if self._try_create() or self._try_takeover():
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(0.01 + random.uniform(0.0, 0.02))

    def release(self) -> None:
        if self._expires_at is not None and self._clock() > self._expires_at:
            logger.warning(
                "Lock %s was held %.1fs past its %dms lease",
                self.scope,
                self._clock() - self._expires_at,
                self.lease_ms,
            )
        self._expires_at = None
        try:
            lease, etag = self._current()
        except BackendError as e:
            logger.warning("Could not read lock %s for release: %s", self.scope, e)
            return
        if lease is None or etag is None or lease.get("owner_id") != self.owner_id:
            return
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=self.key, IfMatch=etag)
        except (ClientError, ParamValidationError) as e:
            # The lease still expires on its own.
            logger.warning("Could not release lock %s: %s", self.scope, e)


def s3_lock_factory(
    config: BoardStoreConfig,
    client: Any = None,
    *,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[str], LockHandle]:
    """Build a factory of S3 lease locks from the ``s3_*`` settings."""
    if not config.s3_lock_bucket:
        raise ValueError("s3_lock_bucket must be set to use S3 lease locks")
    s3 = client if client is not None else make_s3_client(config)

    def factory(scope: str) -> LockHandle:
        return S3LeaseLock(
            scope,
            client=s3,
            bucket=config.s3_lock_bucket or "",
            prefix=config.s3_lock_prefix,
            lease_ms=config.s3_lease_ttl_ms,
            clock=clock,
            sleep=sleep,
        )

    return factory


# --- Manager ---


class LockManager:
    """Scoped acquisition with a guaranteed release on every exit path."""

    def __init__(self, lock_factory: Callable[[str], LockHandle] = LocalLock) -> None:
        self._factory = lock_factory

    @contextmanager
    def hold(self, scope: str, timeout_ms: int) -> Iterator[None]:
        handle = self._factory(scope)
        if not handle.acquire(timeout_ms):
            logger.info("Lock %s busy after %dms", scope, timeout_ms)
            raise LockTimeoutError(scope, timeout_ms)
        logger.debug("Lock %s acquired", scope)
        try:
            yield
        finally:
            handle.release()
            logger.debug("Lock %s released", scope)

    def with_lock(self, scope: str, timeout_ms: int, fn: Callable[[], T]) -> T:
        with self.hold(scope, timeout_ms):
            return fn()
