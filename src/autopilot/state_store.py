#!/usr/bin/env python3
"""
Short-lived key/value state with TTL

Used for OAuth PKCE state between the authorize redirect and the callback.
A shared backend (SQLite file) is preferred; when it is unreachable the
in-process store takes over so a login in progress still completes on
this instance.

Implements:
- get(key) → value | None
- set(key, value, ttl_seconds)
- delete(key)
- clear_expired() → rows removed
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

OAUTH_STATE_TTL = 600
OAUTH_PREFIX = "oauth_state:"


class StateStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStateStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SqliteStateStore:
    """SQLite-backed store; values are JSON encoded."""

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS state_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_state_expires ON state_entries(expires_at)")
        self.conn.commit()
        logger.info("SqliteStateStore initialized at %s", db_path)

    def get(self, key: str) -> Optional[Any]:
        row = self.conn.execute(
            "SELECT value FROM state_entries WHERE key = ? AND expires_at > ?",
            (key, self._clock()),
        ).fetchone()
        return json.loads(row["value"]) if row else None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO state_entries (key, value, expires_at) VALUES (?, ?, ?)",
            (key, json.dumps(value), self._clock() + ttl_seconds),
        )
        self.conn.commit()

    def delete(self, key: str) -> None:
        self.conn.execute("DELETE FROM state_entries WHERE key = ?", (key,))
        self.conn.commit()

    def clear_expired(self) -> int:
        cursor = self.conn.execute(
            "DELETE FROM state_entries WHERE expires_at <= ?", (self._clock(),)
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.debug("Removed %d expired state entries", cursor.rowcount)
        return cursor.rowcount

    def close(self) -> None:
        self.conn.close()


class FallbackStateStore:
    """
    Tries ``primary`` first and falls back to ``fallback`` on any backend
    error. Writes that failed on the primary live only in the fallback, so
    reads consult both.
    """

    def __init__(self, primary: StateStore, fallback: StateStore):
        self.primary = primary
        self.fallback = fallback

    def get(self, key: str) -> Optional[Any]:
        try:
            value = self.primary.get(key)
            if value is not None:
                return value
        except Exception as e:
            logger.warning("Primary state store get failed, using fallback: %s", e)
        return self.fallback.get(key)

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        try:
            self.primary.set(key, value, ttl_seconds)
            return
        except Exception as e:
            logger.warning("Primary state store set failed, using fallback: %s", e)
        self.fallback.set(key, value, ttl_seconds)

    def delete(self, key: str) -> None:
        try:
            self.primary.delete(key)
        except Exception as e:
            logger.warning("Primary state store delete failed: %s", e)
        self.fallback.delete(key)


class OAuthStateManager:
    def __init__(self, store: StateStore, ttl_seconds: float = OAUTH_STATE_TTL):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def put(self, state: str, code_verifier: str, user_id: str) -> None:
        self.store.set(
            OAUTH_PREFIX + state,
            {"codeVerifier": code_verifier, "userId": user_id},
            self.ttl_seconds,
        )

    def get(self, state: str) -> Optional[Dict[str, str]]:
        return self.store.get(OAUTH_PREFIX + state)

    def pop(self, state: str) -> Optional[Dict[str, str]]:
        """Fetch and delete: a state is only good for one callback."""
        data = self.get(state)
        if data is not None:
            self.store.delete(OAUTH_PREFIX + state)
        return data
