"""TTL cache primitive and the record point/negative cache built on it."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError

from boardstore.models import UserRecord, normalize_email

logger = logging.getLogger(__name__)

_NEGATIVE = "__missing__"


@runtime_checkable
class CacheProtocol(Protocol):
    """String-keyed cache with per-entry TTL and no enumeration."""

    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str, ttl_s: float) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryCache:
    """Process-wide TTL map. Expired entries are dropped lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, str]] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: str, ttl_s: float) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_s, value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RecordCache:
    """Point cache for UserRecord keyed independently by id and by email.

    Every key embeds a generation number so an operator can retire all
    entries at once without enumerating them.
    """

    GENERATION_KEY = "boardstore:generation"
    GENERATION_TTL_S = 6 * 3600

    def __init__(self, cache: CacheProtocol, *, ttl_s: float, negative_ttl_s: float) -> None:
        self._cache = cache
        self.ttl_s = ttl_s
        self.negative_ttl_s = negative_ttl_s

    # --- Degrading wrappers ---

    def _safe_get(self, key: str) -> str | None:
        try:
            return self._cache.get(key)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None

    def _safe_put(self, key: str, value: str, ttl_s: float) -> None:
        try:
            self._cache.put(key, value, ttl_s)
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, e)

    def _safe_remove(self, key: str) -> None:
        try:
            self._cache.remove(key)
        except Exception as e:
            logger.warning("Cache remove failed for %s: %s", key, e)

    def _generation(self) -> int:
        raw = self._safe_get(self.GENERATION_KEY)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    def _key(self, field: str, value: str) -> str:
        if field == "email":
            value = normalize_email(value)
        return f"boardstore:v{self._generation()}:user:{field}:{value}"

    # --- Records ---

    def get(self, field: str, value: str) -> UserRecord | None:
        raw = self._safe_get(self._key(field, value))
        if raw is None or raw == _NEGATIVE:
            return None
        try:
            return UserRecord.model_validate_json(raw)
        except (PydanticValidationError, ValueError) as e:
            logger.warning("Discarding undecodable cache entry for %s=%s: %s", field, value, e)
            self._safe_remove(self._key(field, value))
            return None

    def is_known_missing(self, field: str, value: str) -> bool:
        return self._safe_get(self._key(field, value)) == _NEGATIVE

    def put(self, record: UserRecord, *, fields: Iterable[str] = ("id", "email")) -> None:
        """Cache ``record`` under the given keys.

        Only a lookup that resolved the email should cache the email key;
        inactive users may share an email with the active one.
        """
        try:
            payload = record.model_dump_json(by_alias=True)
        except (TypeError, ValueError) as e:
            logger.warning("Cannot serialize user %s for caching: %s", record.id, e)
            return
        for field in fields:
            value = record.id if field == "id" else record.email
            self._safe_put(self._key(field, value), payload, self.ttl_s)

    def put_missing(self, field: str, value: str) -> None:
        self._safe_put(self._key(field, value), _NEGATIVE, self.negative_ttl_s)

    def invalidate(self, *, ids: Iterable[str] = (), emails: Iterable[str] = ()) -> None:
        """Drop point and negative entries for exactly these keys."""
        for user_id in ids:
            if user_id:
                self._safe_remove(self._key("id", user_id))
        for email in emails:
            if email:
                self._safe_remove(self._key("email", email))

    # --- Arbitrary JSON values ---

    def get_json(self, key: str) -> Any:
        raw = self._safe_get(f"boardstore:v{self._generation()}:{key}")
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def put_json(self, key: str, value: Any, ttl_s: float) -> None:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("Cannot serialize cache value for %s: %s", key, e)
            return
        self._safe_put(f"boardstore:v{self._generation()}:{key}", payload, ttl_s)

    def remove_json(self, key: str) -> None:
        self._safe_remove(f"boardstore:v{self._generation()}:{key}")

    def flush(self) -> int:
        """Retire every entry by bumping the generation. Returns the new generation."""
        new_generation = self._generation() + 1
        self._safe_put(self.GENERATION_KEY, str(new_generation), self.GENERATION_TTL_S)
        logger.warning("Record cache flushed; generation is now %d", new_generation)
        return new_generation
