from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import sqlite3
import time


@dataclass
class CacheResult:
    value: str | None
    hit: bool


class SimpleCache:
    """Response cache for LLM calls, keyed by the caller's cache key."""

    def __init__(self, enabled: bool, backend: str, base_dir: Path, ttl_seconds: int, namespace: str = "default"):
        self.enabled = enabled
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace
        self.hits = 0
        self.misses = 0
        self._conn: sqlite3.Connection | None = None

        if not enabled:
            return

        if backend != "sqlite":
            self.enabled = False
            return

        cache_path = (base_dir / "llm_cache.sqlite").resolve()
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(cache_path)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS llm_responses (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (namespace, key)
            );
            """
        )
        self._conn.commit()

    def _expired(self, created_at: float) -> bool:
        return self.ttl_seconds > 0 and (time.time() - created_at) > self.ttl_seconds

    def get(self, key: str) -> CacheResult:
        if not self.enabled or not self._conn:
            return CacheResult(value=None, hit=False)

        row = self._conn.execute(
            "SELECT value, created_at FROM llm_responses WHERE namespace = ? AND key = ?",
            (self.namespace, key),
        ).fetchone()
        if not row:
            self.misses += 1
            return CacheResult(value=None, hit=False)

        value, created_at = row
        if self._expired(float(created_at)):
            self.delete(key)
            self.misses += 1
            return CacheResult(value=None, hit=False)

        self.hits += 1
        return CacheResult(value=str(value), hit=True)

    def set(self, key: str, value: str) -> None:
        if not self.enabled or not self._conn:
            return
        self._conn.execute(
            "INSERT OR REPLACE INTO llm_responses (namespace, key, value, created_at) VALUES (?, ?, ?, ?)",
            (self.namespace, key, value, time.time()),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        if not self.enabled or not self._conn:
            return
        self._conn.execute("DELETE FROM llm_responses WHERE namespace = ? AND key = ?", (self.namespace, key))
        self._conn.commit()

    def purge_expired(self) -> int:
        if not self.enabled or not self._conn or self.ttl_seconds <= 0:
            return 0
        cutoff = time.time() - self.ttl_seconds
        cursor = self._conn.execute(
            "DELETE FROM llm_responses WHERE namespace = ? AND created_at < ?",
            (self.namespace, cutoff),
        )
        self._conn.commit()
        return int(cursor.rowcount or 0)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
