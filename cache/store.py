"""
cache/store.py -- TTL key-value stores for ephemeral auth state.

Holds everything short-lived or shared across servers: PKCE verifiers,
SSO session records, authorization grants, issued refresh tokens, and
registered OAuth clients. Three backends share one interface:

  memory://             -- in-process dict; tests and single-process dev runs
  sqlite:///path.db     -- local file, WAL mode; single-host deployments
  redis://host:port/db  -- shared store for multi-server SSO

Atomicity contract (every backend):
  take(key)  -- get-and-delete in one step. Two callers racing on the same
                key can never both receive the value.
  add(key)   -- set-if-absent. Exactly one of several racing callers wins.

Expired entries are invisible to every read; they are purged lazily.

Usage:
    kv = open_kv_store("sqlite:///./kv.db")
    kv.put("pkce:abc", "verifier", ttl=600)
    kv.take("pkce:abc")   # "verifier"
    kv.take("pkce:abc")   # None
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Optional, Protocol

import redis

_DDL = """
CREATE TABLE IF NOT EXISTS kv_entries (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL
);
"""


class KeyValueStore(Protocol):
    """Minimal TTL key-value contract shared by all backends.

    ttl arguments are in seconds; None means "no expiry". Backend I/O errors
    (sqlite3.Error, redis.RedisError) propagate to the caller.
    """

    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    def take(self, key: str) -> Optional[str]: ...

    def add(self, key: str, value: str, ttl: Optional[int] = None) -> bool: ...

    def delete(self, key: str) -> None: ...

    def ttl(self, key: str) -> Optional[int]: ...

    def close(self) -> None: ...


class MemoryKeyValueStore:
    """Process-local store guarded by a lock. clock is injectable for tests."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl is not None else None

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
        return entry[0] if entry else None

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    def take(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._data[key]
        return entry[0]

    def add(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
        return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return int(entry[1] - self._clock())

    def close(self) -> None:
        with self._lock:
            self._data.clear()


class SQLiteKeyValueStore:
    """SQLite-backed store.

    The connection runs in autocommit mode (isolation_level=None) so take()
    and add() can open an explicit BEGIN IMMEDIATE transaction. IMMEDIATE
    grabs the database write lock up front, which makes the read-then-write
    pair atomic across every connection to the same file, not just across
    threads in this process.
    """

    def __init__(self, db_path: Path | str, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None, timeout=10.0)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl is not None else None

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv_entries WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, self._clock()),
            ).fetchone()
        return row[0] if row else None

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, self._expiry(ttl)),
            )

    def take(self, key: str) -> Optional[str]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT value FROM kv_entries WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                    (key, self._clock()),
                ).fetchone()
                self._conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        return row[0] if row else None

    def add(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                now = self._clock()
                self._conn.execute(
                    "DELETE FROM kv_entries WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                    (key, now),
                )
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO kv_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, value, self._expiry(ttl)),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        return cursor.rowcount == 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            row = self._conn.execute(
                "SELECT expires_at FROM kv_entries WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, self._clock()),
            ).fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0] - self._clock())

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


class RedisKeyValueStore:
    """Redis-backed store for deployments where several servers share SSO state.

    take() relies on GETDEL (Redis >= 6.2) and add() on SET NX EX, both single
    server-side commands, so atomicity holds across every gateway instance.
    """

    def __init__(self, url: str, client: Optional[redis.Redis] = None) -> None:
        self._client = client or redis.Redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=10.0,
            socket_connect_timeout=5.0,
        )

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._client.set(key, value, ex=ttl)

    def take(self, key: str) -> Optional[str]:
        return self._client.getdel(key)

    def add(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        return bool(self._client.set(key, value, ex=ttl, nx=True))

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def ttl(self, key: str) -> Optional[int]:
        remaining = self._client.ttl(key)
        # -1: key exists without expiry, -2: key does not exist
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    def close(self) -> None:
        self._client.close()


def open_kv_store(url: str) -> KeyValueStore:
    """Build a store from a URL. Raises ValueError for unknown schemes."""
    if url.startswith("memory://"):
        return MemoryKeyValueStore()
    if url.startswith("sqlite:///"):
        return SQLiteKeyValueStore(url[len("sqlite:///") :])
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisKeyValueStore(url)
    raise ValueError(f"Unsupported key-value store URL: {url!r}")
