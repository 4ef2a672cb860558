"""Transactional execution of store operations with bounded conflict retry."""

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("locked", "busy")


def is_transient(error: BaseException) -> bool:
    """True for SQLite lock/busy errors that a later attempt may not hit."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@dataclass
class TransactionMetrics:
    transactions: int = 0
    successes: int = 0
    failures: int = 0
    attempts: int = 0
    retries: int = 0
    conflicts: int = 0
    last_latency: float = 0.0
    average_latency: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


class TransactionRunner:
    """Runs units of work inside SQLite transactions.

    A unit of work is a callable taking the connection. Writes take the
    database write lock up front (BEGIN IMMEDIATE) so conflicts surface at
    BEGIN rather than mid-way. Calls made while a transaction is already
    open on this runner join it.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        max_attempts: int = 5,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.conn = conn
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._lock = threading.RLock()
        self._depth = 0
        self._metrics = TransactionMetrics()

    # ── Public API ───────────────────────────────────────────────────────────

    def read(self, work: Callable[[sqlite3.Connection], Any]) -> Any:
        return self._run(work, "BEGIN")

    def write(self, work: Callable[[sqlite3.Connection], Any]) -> Any:
        return self._run(work, "BEGIN IMMEDIATE")

    def health_check(self) -> bool:
        """Return True if a trivial query executes."""
        try:
            with self._lock:
                row = self.conn.execute("SELECT 1").fetchone()
            return row is not None and row[0] == 1
        except sqlite3.Error:
            logger.exception("Store health check failed")
            return False

    @property
    def metrics(self) -> TransactionMetrics:
        with self._lock:
            return TransactionMetrics(**self._metrics.as_dict())

    def close(self):
        with self._lock:
            self.conn.close()

    # ── Internals ────────────────────────────────────────────────────────────

    def _run(self, work, begin: str):
        with self._lock:
            if self._depth > 0:
                return work(self.conn)

            self._metrics.transactions += 1
            started = time.monotonic()
            attempt = 0
            while True:
                attempt += 1
                self._metrics.attempts += 1
                try:
                    result = self._attempt(work, begin)
                except Exception as e:
                    if is_transient(e) and attempt < self.max_attempts:
                        self._metrics.conflicts += 1
                        self._metrics.retries += 1
                        delay = self._backoff(attempt)
                        logger.warning(
                            "Transient store conflict (%s), retry %d/%d in %.2fs",
                            e, attempt, self.max_attempts - 1, delay,
                        )
                        self._sleep(delay)
                        continue
                    if is_transient(e):
                        self._metrics.conflicts += 1
                    self._metrics.failures += 1
                    self._record_latency(started)
                    raise
                self._metrics.successes += 1
                self._record_latency(started)
                return result

    def _attempt(self, work, begin: str):
        self.conn.execute(begin)
        self._depth += 1
        try:
            result = work(self.conn)
        except BaseException:
            self._depth -= 1
            self._rollback()
            raise
        self._depth -= 1
        try:
            self.conn.execute("COMMIT")
        except sqlite3.Error:
            self._rollback()
            raise
        return result

    def _rollback(self):
        if self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    def _backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def _record_latency(self, started: float):
        elapsed = time.monotonic() - started
        self._metrics.last_latency = elapsed
        if self._metrics.average_latency == 0.0:
            self._metrics.average_latency = elapsed
        else:
            self._metrics.average_latency = (
                0.9 * self._metrics.average_latency + 0.1 * elapsed
            )
