"""
Tests for caching infrastructure: coalescer, handles, and stores.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from dashboard.cache import (
    HandleRegistry,
    MemoryBinaryStore,
    MemoryMarkerStore,
    RequestCoalescer,
    SQLBinaryStore,
    SQLMarkerStore,
)
from dashboard.cache.core import CacheEntry
from dashboard.db import create_session_factory


# =============================================================================
# Request Coalescer
# =============================================================================

class TestRequestCoalescer:
    """Single-flight behavior."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        coalescer = RequestCoalescer()
        gate = asyncio.Event()
        calls = []

        async def factory():
            calls.append(1)
            await gate.wait()
            return "result"

        tasks = [
            asyncio.create_task(coalescer.get_or_start("k", factory))
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        assert coalescer.is_in_flight("k")

        gate.set()
        results = await asyncio.gather(*tasks)

        assert results == ["result"] * 5
        assert len(calls) == 1
        assert coalescer.active_requests == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller_and_clears_entry(self):
        coalescer = RequestCoalescer()
        gate = asyncio.Event()

        async def failing():
            await gate.wait()
            raise ValueError("boom")

        tasks = [
            asyncio.create_task(coalescer.get_or_start("k", failing))
            for _ in range(3)
        ]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, ValueError) for r in results)
        assert not coalescer.is_in_flight("k")

    @pytest.mark.asyncio
    async def test_next_call_after_settle_starts_fresh(self):
        coalescer = RequestCoalescer()
        calls = []

        async def factory():
            calls.append(1)
            return len(calls)

        assert await coalescer.get_or_start("k", factory) == 1
        assert await coalescer.get_or_start("k", factory) == 2

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        coalescer = RequestCoalescer()

        async def value(v):
            return v

        a, b = await asyncio.gather(
            coalescer.get_or_start("a", lambda: value("A")),
            coalescer.get_or_start("b", lambda: value("B")),
        )
        assert (a, b) == ("A", "B")


# =============================================================================
# Handle Registry
# =============================================================================

class TestHandleRegistry:
    """Ephemeral handle lifecycle."""

    def test_each_create_returns_new_handle(self):
        registry = HandleRegistry()
        first = registry.create_handle(b"img", "image/jpeg", "wallpaper")
        second = registry.create_handle(b"img", "image/jpeg", "wallpaper")
        assert first != second
        assert registry.get(first).data == b"img"

    def test_release_is_idempotent(self):
        registry = HandleRegistry()
        handle = registry.create_handle(b"img", "image/jpeg", "wallpaper")

        assert registry.release_handle(handle) is True
        assert registry.release_handle(handle) is False
        assert registry.get(handle) is None

    def test_release_foreign_handle_is_noop(self):
        registry = HandleRegistry()
        assert registry.release_handle("not-a-handle") is False
        assert registry.release_handle(None) is False

    def test_release_one_keeps_others(self):
        registry = HandleRegistry()
        a = registry.create_handle(b"a", "image/png", "wallpaper")
        b = registry.create_handle(b"b", "image/png", "wallpaper")
        registry.release_handle(a)
        assert registry.get(b).data == b"b"

    def test_stats_and_release_all(self):
        registry = HandleRegistry()
        registry.create_handle(b"12345", "image/png", "wallpaper")
        registry.create_handle(b"123", "image/png", "icon")

        stats = registry.get_stats()
        assert stats["live_handles"] == 2
        assert stats["live_bytes"] == 8
        assert stats["by_tag"] == {"wallpaper": 1, "icon": 1}

        assert registry.release_all() == 2
        assert registry.get_stats()["live_handles"] == 0

    def test_idle_handles_are_reclaimed(self, clock):
        registry = HandleRegistry(max_idle_seconds=600, clock=clock)
        stale = registry.create_handle(b"old", "image/jpeg", "wallpaper")
        clock.advance(hours=1)
        kept = registry.create_handle(b"new", "image/jpeg", "wallpaper")

        assert registry.get(stale) is None
        assert registry.get(kept).data == b"new"
        assert registry.get_stats()["reclaimed_total"] == 1
        # Reclaimed handles release like released ones
        assert registry.release_handle(stale) is False

        clock.advance(hours=1)
        assert registry.reclaim_idle() == 1
        assert registry.get_stats()["live_handles"] == 0

    def test_reading_a_handle_keeps_it_alive(self, clock):
        registry = HandleRegistry(max_idle_seconds=600, clock=clock)
        handle = registry.create_handle(b"img", "image/jpeg", "wallpaper")

        clock.now += timedelta(minutes=8)
        registry.get(handle)
        clock.now += timedelta(minutes=8)

        assert registry.reclaim_idle() == 0
        assert registry.get(handle) is not None

    def test_live_handle_cap_evicts_least_recently_used(self, clock):
        registry = HandleRegistry(max_handles=2, clock=clock)
        first = registry.create_handle(b"1", "image/jpeg", "wallpaper")
        clock.now += timedelta(seconds=1)
        second = registry.create_handle(b"2", "image/jpeg", "wallpaper")
        clock.now += timedelta(seconds=1)
        registry.get(first)
        clock.now += timedelta(seconds=1)
        third = registry.create_handle(b"3", "image/jpeg", "wallpaper")

        assert registry.get(second) is None
        assert registry.get(first).data == b"1"
        assert registry.get(third).data == b"3"
        assert registry.get_stats()["live_handles"] == 2


# =============================================================================
# Stores
# =============================================================================

@pytest.fixture(params=["memory", "sql"])
def binary_store(request, tmp_path):
    if request.param == "memory":
        return MemoryBinaryStore()
    factory = create_session_factory(f"sqlite:///{tmp_path / 'cache.db'}")
    return SQLBinaryStore(factory)


@pytest.fixture(params=["memory", "sql"])
def marker_store(request, tmp_path):
    if request.param == "memory":
        return MemoryMarkerStore()
    factory = create_session_factory(f"sqlite:///{tmp_path / 'markers.db'}")
    return SQLMarkerStore(factory)


class TestBinaryStores:
    """Both store implementations behave the same."""

    @pytest.mark.asyncio
    async def test_set_get_roundtrip(self, binary_store):
        await binary_store.set("k", b"\x00\x01payload", 60, "image/png")
        entry = await binary_store.get("k")
        assert entry.data == b"\x00\x01payload"
        assert entry.mime_type == "image/png"
        assert entry.expires_at > entry.created_at

    @pytest.mark.asyncio
    async def test_missing_key(self, binary_store):
        assert await binary_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_set_replaces(self, binary_store):
        await binary_store.set("k", b"old", 60)
        await binary_store.set("k", b"new", 60)
        assert (await binary_store.get("k")).data == b"new"
        assert await binary_store.list_keys() == ["k"]

    @pytest.mark.asyncio
    async def test_delete_and_list(self, binary_store):
        await binary_store.set("a", b"1", 60)
        await binary_store.set("b", b"2", 60)
        await binary_store.delete("a")
        await binary_store.delete("never-existed")
        assert await binary_store.list_keys() == ["b"]

    @pytest.mark.asyncio
    async def test_expired_entries_are_hidden_and_purged(self, binary_store):
        await binary_store.set("gone", b"1", -1)
        await binary_store.set("kept", b"2", 60)

        assert await binary_store.get("gone") is None
        await binary_store.set("gone-too", b"3", -1)
        assert await binary_store.purge_expired() == 1
        assert await binary_store.list_keys() == ["kept"]


class TestMarkerStores:
    """Durable day markers."""

    @pytest.mark.asyncio
    async def test_set_get_remove(self, marker_store):
        assert await marker_store.get_item("daily") is None
        await marker_store.set_item("daily", "2026-10-18")
        await marker_store.set_item("daily", "2026-10-19")
        assert await marker_store.get_item("daily") == "2026-10-19"
        await marker_store.remove_item("daily")
        assert await marker_store.get_item("daily") is None


class TestCacheEntry:

    def test_expiry(self):
        now = datetime(2026, 10, 19, 12, 0)
        entry = CacheEntry.create(b"x", "image/jpeg", 3600, now=now)
        assert not entry.is_expired(now + timedelta(minutes=59))
        assert entry.is_expired(now + timedelta(hours=1))
        assert entry.size == 1
