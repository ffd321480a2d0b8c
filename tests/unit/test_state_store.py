#!/usr/bin/env python3
"""
Unit tests for the TTL state stores and OAuth state
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from autopilot.clock import FakeClock
from autopilot.state_store import (
    FallbackStateStore,
    MemoryStateStore,
    OAuthStateManager,
    SqliteStateStore,
)


class BrokenStore:
    def get(self, key):
        raise ConnectionError("store unreachable")

    def set(self, key, value, ttl_seconds):
        raise ConnectionError("store unreachable")

    def delete(self, key):
        raise ConnectionError("store unreachable")


class TestMemoryStateStore:
    def test_expiry(self):
        clock = FakeClock()
        store = MemoryStateStore(clock=clock)
        store.set("k", {"v": 1}, ttl_seconds=10)

        assert store.get("k") == {"v": 1}
        clock.advance(10)
        assert store.get("k") is None

    def test_clear_expired(self):
        clock = FakeClock()
        store = MemoryStateStore(clock=clock)
        store.set("old", 1, 5)
        store.set("new", 2, 50)
        clock.advance(6)

        assert store.clear_expired() == 1
        assert len(store) == 1


class TestSqliteStateStore:
    @pytest.fixture
    def store(self, tmp_path):
        store = SqliteStateStore(str(tmp_path / "state" / "state.db"), clock=FakeClock())
        yield store
        store.close()

    def test_roundtrip_and_delete(self, store):
        store.set("k", {"codeVerifier": "abc"}, 600)
        assert store.get("k") == {"codeVerifier": "abc"}

        store.delete("k")
        assert store.get("k") is None

    def test_expired_rows(self, store):
        store.set("k", "v", 10)
        store._clock.advance(11)

        assert store.get("k") is None
        assert store.clear_expired() == 1


class TestFallbackStateStore:
    def test_uses_fallback_when_primary_down(self):
        fallback = MemoryStateStore(clock=FakeClock())
        store = FallbackStateStore(BrokenStore(), fallback)

        store.set("k", "v", 60)
        assert store.get("k") == "v"
        store.delete("k")
        assert fallback.get("k") is None

    def test_prefers_primary(self):
        clock = FakeClock()
        primary, fallback = MemoryStateStore(clock=clock), MemoryStateStore(clock=clock)
        store = FallbackStateStore(primary, fallback)

        store.set("k", "v", 60)
        assert primary.get("k") == "v"
        assert fallback.get("k") is None


class TestOAuthStateManager:
    def test_pop_is_single_use(self):
        clock = FakeClock()
        manager = OAuthStateManager(MemoryStateStore(clock=clock))
        manager.put("state-1", "verifier", "user-1")

        assert manager.pop("state-1") == {"codeVerifier": "verifier", "userId": "user-1"}
        assert manager.pop("state-1") is None

    def test_expires_after_ten_minutes(self):
        clock = FakeClock()
        manager = OAuthStateManager(MemoryStateStore(clock=clock))
        manager.put("state-1", "verifier", "user-1")

        clock.advance(599)
        assert manager.get("state-1") is not None
        clock.advance(1)
        assert manager.get("state-1") is None
