"""Batched backend access with retry policy, circuit breaker and scan budget."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from boardstore.backend import CellEdit, StructuralEdit, TabularBackend, a1_range
from boardstore.cache import RecordCache
from boardstore.config import BoardStoreConfig
from boardstore.errors import CircuitOpenError, TransientBackendError
from boardstore.models import RawRow, ScanResult
from boardstore.rows import raw_rows

logger = logging.getLogger(__name__)

T = TypeVar("T")

CIRCUIT_KEY = "circuit:backend"


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff capped at ``max_delay_ms``; ``max_attempts`` counts the first try."""

    max_attempts: int = 3
    base_delay_ms: int = 200
    max_delay_ms: int = 2000

    @classmethod
    def from_config(cls, config: BoardStoreConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, config.retry_max_attempts),
            base_delay_ms=config.retry_base_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
        )

    def delay_s(self, attempt: int) -> float:
        return min(self.base_delay_ms * attempt, self.max_delay_ms) / 1000.0


class BatchIO:
    """The only path from the store and diagnostics to the backend.

    Every public method is one backend call per attempt. Transient failures
    are retried; everything else propagates on the first occurrence.
    """

    def __init__(
        self,
        backend: TabularBackend,
        config: BoardStoreConfig,
        cache: RecordCache | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.config = config
        self.policy = RetryPolicy.from_config(config)
        self._cache = cache
        self._sleep = sleep
        self._clock = clock
        self._local_circuit: dict[str, float] = {"consecutive_429": 0, "open_until": 0.0}

    # --- Circuit breaker ---

    def _circuit_state(self) -> dict[str, float]:
        state = dict(self._local_circuit)
        if self._cache is not None:
            shared = self._cache.get_json(CIRCUIT_KEY)
            if isinstance(shared, dict):
                state["consecutive_429"] = max(
                    state["consecutive_429"], float(shared.get("consecutive_429", 0))
                )
                state["open_until"] = max(state["open_until"], float(shared.get("open_until", 0.0)))
        return state

    def _save_circuit(self, state: dict[str, float]) -> None:
        self._local_circuit = dict(state)
        if self._cache is None:
            return
        if state["consecutive_429"] or state["open_until"] > self._clock():
            ttl = max(self.config.circuit_breaker_open_s, 1.0) * 2
            self._cache.put_json(CIRCUIT_KEY, state, ttl)
        else:
            self._cache.remove_json(CIRCUIT_KEY)

    def _check_circuit(self, operation: str) -> None:
        open_until = self._circuit_state()["open_until"]
        remaining = open_until - self._clock()
        if remaining > 0:
            raise CircuitOpenError(operation, remaining)

    def _record_rate_limited(self, operation: str) -> None:
        state = self._circuit_state()
        state["consecutive_429"] += 1
        if state["consecutive_429"] >= self.config.circuit_breaker_threshold:
            state["open_until"] = self._clock() + self.config.circuit_breaker_open_s
            state["consecutive_429"] = 0
            self._save_circuit(state)
            logger.warning(
                "Circuit opened for %.0fs after repeated rate limiting during %s",
                self.config.circuit_breaker_open_s,
                operation,
            )
            raise CircuitOpenError(operation, self.config.circuit_breaker_open_s)
        self._save_circuit(state)

    def _record_success(self) -> None:
        if self._local_circuit["consecutive_429"] or self._local_circuit["open_until"]:
            self._save_circuit({"consecutive_429": 0, "open_until": 0.0})

    # --- Retry loop ---

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        self._check_circuit(operation)
        attempt = 1
        while True:
            try:
                result = fn()
            except TransientBackendError as e:
                if e.status == 429:
                    self._record_rate_limited(operation)
                if attempt >= self.policy.max_attempts:
                    logger.warning("%s failed after %d attempts: %s", operation, attempt, e)
                    raise
                delay = self.policy.delay_s(attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s); retrying in %.2fs",
                    operation,
                    attempt,
                    self.policy.max_attempts,
                    e,
                    delay,
                )
                self._sleep(delay)
                attempt += 1
                continue
            self._record_success()
            return result

    # --- Request kinds ---

    def batch_get(self, ranges: list[str]) -> list[list[list[Any]]]:
        return self._call("batch_get", lambda: self.backend.batch_get(ranges))

    def batch_update(self, edits: list[CellEdit]) -> int:
        if not edits:
            return 0
        return self._call("batch_update", lambda: self.backend.batch_update(edits))

    def append(self, sheet: str, rows: list[list[Any]]) -> None:
        self._call("append", lambda: self.backend.append(sheet, rows))

    def structural_edit(self, edits: list[StructuralEdit]) -> None:
        if not edits:
            return
        self._call("structural_edit", lambda: self.backend.structural_edit(edits))

    def list_sheets(self) -> list[str]:
        return self._call("list_sheets", self.backend.list_sheets)

    def count_rows(self, sheet: str) -> int:
        return self._call("count_rows", lambda: self.backend.count_rows(sheet))

    # --- Scans ---

    def scan(
        self,
        sheet: str,
        *,
        width: int,
        chunk_rows: int | None = None,
        budget_s: float | None = None,
        first_row: int = 2,
    ) -> ScanResult[RawRow]:
        """Read a table in chunks under a wall-clock budget.

        The budget is checked between chunks. Running out of it returns the
        rows read so far with ``truncated=True``; it never raises.
        """
        chunk = max(1, chunk_rows or self.config.scan_chunk_rows)
        budget = self.config.scan_budget_s if budget_s is None else budget_s
        started = self._clock()

        last_row = self.count_rows(sheet)
        total = max(0, last_row - first_row + 1)
        rows: list[RawRow] = []
        processed = 0
        start = first_row
        while start <= last_row:
            if processed and self._clock() - started >= budget:
                elapsed = self._clock() - started
                logger.warning(
                    "Scan of %s truncated after %d/%d rows (%.1fs budget)",
                    sheet,
                    processed,
                    total,
                    budget,
                )
                return ScanResult(
                    rows=rows,
                    processed_rows=processed,
                    total_rows=total,
                    truncated=True,
                    elapsed_s=elapsed,
                )
            end = min(start + chunk - 1, last_row)
            (values,) = self.batch_get([a1_range(sheet, start, 1, end, width)])
            rows.extend(raw_rows(values, first_row=start))
            processed += end - start + 1
            start = end + 1

        return ScanResult(
            rows=rows,
            processed_rows=processed,
            total_rows=total,
            truncated=False,
            elapsed_s=self._clock() - started,
        )
