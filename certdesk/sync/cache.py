"""Per-session fallback cache backed by an embedded SQLite database.

The cache is never a source of truth. It only answers reads while the ticket
store is unreachable, and only with entries younger than ``max_age`` seconds.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable

from certdesk.errors import CacheError, CacheQuotaExceededError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 512 * 1024
DEFAULT_MAX_AGE = 24 * 60 * 60.0


class SqliteFallbackCache:
    """``get`` / ``put`` / ``evict_oldest`` over a size-bounded key-value table."""

    _CREATE_SQL = """
    CREATE TABLE IF NOT EXISTS cache_entries (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        size INTEGER NOT NULL,
        stored_at REAL NOT NULL
    )
    """

    def __init__(
        self,
        path: str | Path = ":memory:",
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_age: float = DEFAULT_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes
        self.max_age = max_age
        self._clock = clock
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
            with self._conn:
                self._conn.execute(self._CREATE_SQL)
        except sqlite3.Error as exc:
            raise CacheError(f"Cannot open fallback cache at {path}: {exc}") from exc

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` when absent or older than ``max_age``."""

        try:
            row = self._conn.execute(
                "SELECT value, stored_at FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise CacheError(f"Fallback cache read failed: {exc}") from exc
        if row is None:
            return None
        value, stored_at = row
        if self._clock() - stored_at > self.max_age:
            logger.info("Fallback cache entry %s is stale; ignoring it", key)
            return None
        return json.loads(value)

    def put(self, key: str, value: Any) -> int:
        """Store ``value`` under ``key``, evicting older entries to stay within quota.

        Returns the stored size in bytes. Raises :class:`CacheQuotaExceededError`
        when the value alone does not fit; nothing is written in that case.
        """

        payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        size = len(payload.encode("utf-8"))
        if size > self.max_bytes:
            raise CacheQuotaExceededError(f"Cache value of {size} bytes exceeds the {self.max_bytes} byte quota")
        try:
            with self._conn:
                self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                while self._total_bytes() + size > self.max_bytes:
                    if self._evict_oldest() is None:
                        break
                self._conn.execute(
                    "INSERT INTO cache_entries (key, value, size, stored_at) VALUES (?, ?, ?, ?)",
                    (key, payload, size, self._clock()),
                )
        except sqlite3.Error as exc:
            raise CacheError(f"Fallback cache write failed: {exc}") from exc
        return size

    def evict_oldest(self) -> str | None:
        """Remove the least recently stored entry and return its key."""

        try:
            with self._conn:
                return self._evict_oldest()
        except sqlite3.Error as exc:
            raise CacheError(f"Fallback cache eviction failed: {exc}") from exc

    def clear(self) -> None:
        try:
            with self._conn:
                self._conn.execute("DELETE FROM cache_entries")
        except sqlite3.Error as exc:
            raise CacheError(f"Fallback cache clear failed: {exc}") from exc

    def total_bytes(self) -> int:
        return self._total_bytes()

    def close(self) -> None:
        self._conn.close()

    def _total_bytes(self) -> int:
        row = self._conn.execute("SELECT COALESCE(SUM(size), 0) FROM cache_entries").fetchone()
        return int(row[0])

    def _evict_oldest(self) -> str | None:
        row = self._conn.execute(
            "SELECT key FROM cache_entries ORDER BY stored_at ASC, rowid ASC LIMIT 1"
        ).fetchone()
        if row is None:
            return None
        self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (row[0],))
        return str(row[0])
