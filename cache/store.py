"""
cache/store.py -- SQLite-backed TTL cache capability.

A small get/set/delete key-value cache with a per-entry TTL. Values are JSON
dicts. The default database is in-memory, so the cache is ephemeral and
process-scoped: it is created once in the application lifespan and injected
wherever it is needed, never imported as a global.

The cache is never authoritative. Callers fall back to the persistent store
on a miss and repopulate.

Usage:
    cache = TTLCache(default_ttl=900)
    cache.set("user:42", {"id": "42"})
    cache.get("user:42")                # returns dict or None
    cache.delete("user:42")
    cache.purge_expired()               # call periodically to trim old entries
"""

import json
import sqlite3
import threading
import time
from typing import Callable, Optional

_DEFAULT_TTL = 15 * 60  # seconds

_DDL = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key         TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class TTLCache:
    def __init__(
        self,
        db_path: str = ":memory:",
        default_ttl: int = _DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        # One connection shared by the threadpool; sqlite3 objects are not
        # safe for concurrent use, so every statement runs under the lock.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[dict]:
        """Return cached data for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, expires_at FROM cache_entries WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            data, expires_at = row
            if self._clock() >= expires_at:
                self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                self._conn.commit()
                return None
        return json.loads(data)

    def set(self, key: str, data: dict, ttl: Optional[int] = None) -> None:
        """Store data for key, replacing any existing entry."""
        expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO cache_entries (key, data, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(data), expires_at),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()
