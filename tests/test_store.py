"""Tests for the state store layer."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tatlimit.app.core.store import InMemoryStore, RedisStore, _StoreEntry


class TestStoreEntry:
    """Tests for the internal _StoreEntry class."""

    def test_entry_no_expiry(self):
        entry = _StoreEntry(value="1.0", expires_at=None)
        assert not entry.is_expired(now=1e12)

    def test_entry_expired_at_deadline(self):
        entry = _StoreEntry(value="1.0", expires_at=10.0)
        assert entry.is_expired(now=10.0)
        assert not entry.is_expired(now=9.9)


class TestInMemoryStore:
    """Tests for the InMemoryStore implementation."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, clock):
        store = InMemoryStore(clock=clock)
        await store.set("key1", "1000.5", ttl=2)
        assert await store.get("key1") == "1000.5"

    @pytest.mark.asyncio
    async def test_get_nonexistent_key(self, clock):
        store = InMemoryStore(clock=clock)
        assert await store.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_entry_expires_with_clock(self, clock):
        store = InMemoryStore(clock=clock)
        await store.set("key1", "1000.5", ttl=2)
        assert store.ttl("key1") == 2
        clock.advance(1.5)
        assert await store.get("key1") == "1000.5"
        clock.advance(0.5)
        assert await store.get("key1") is None

    @pytest.mark.asyncio
    async def test_delete_many_and_missing(self, clock):
        store = InMemoryStore(clock=clock)
        await store.set("a", "1", ttl=5)
        await store.set("b", "2", ttl=5)
        await store.delete("a", "b", "missing")
        assert await store.get("a") is None
        assert await store.get("b") is None

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, clock):
        store = InMemoryStore(clock=clock)
        await store.set("short", "1", ttl=1)
        await store.set("long", "2", ttl=10)
        clock.advance(5)
        assert await store.cleanup_expired() == 1
        assert await store.get("long") == "2"

    @pytest.mark.asyncio
    async def test_lock_is_exclusive_per_key(self, clock):
        store = InMemoryStore(clock=clock)
        events = []

        async def worker(name):
            async with store.lock("shared"):
                events.append(f"{name}:enter")
                await asyncio.sleep(0)
                events.append(f"{name}:exit")

        await asyncio.gather(worker("a"), worker("b"))
        assert events in (
            ["a:enter", "a:exit", "b:enter", "b:exit"],
            ["b:enter", "b:exit", "a:enter", "a:exit"],
        )

    @pytest.mark.asyncio
    async def test_locks_on_distinct_keys_do_not_block(self, clock):
        store = InMemoryStore(clock=clock)
        async with store.lock("k1"):
            async with store.lock("k2"):
                pass

    @pytest.mark.asyncio
    async def test_lock_entry_dropped_when_unused(self, clock):
        store = InMemoryStore(clock=clock)
        holding = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with store.lock("k"):
                holding.set()
                await release.wait()

        async def waiter():
            async with store.lock("k"):
                pass

        holder_task = asyncio.create_task(holder())
        await holding.wait()
        waiter_task = asyncio.create_task(waiter())
        await asyncio.sleep(0)

        assert store._locks["k"].users == 2

        release.set()
        await asyncio.gather(holder_task, waiter_task)
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_cancelled_waiter_releases_lock_entry(self, clock):
        store = InMemoryStore(clock=clock)

        async def waiter():
            async with store.lock("k"):
                pass

        async with store.lock("k"):
            waiter_task = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            assert store._locks["k"].users == 2
            waiter_task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter_task
            assert store._locks["k"].users == 1

        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_many_keys_leave_no_locks(self, clock):
        store = InMemoryStore(clock=clock)
        for i in range(1000):
            async with store.lock(f"user_{i}"):
                pass
        assert store._locks == {}


class TestRedisStore:
    """Tests for the RedisStore implementation."""

    def test_requires_client_or_url(self):
        with pytest.raises(ValueError):
            RedisStore()

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self):
        redis_client = AsyncMock()
        store = RedisStore(redis_client=redis_client)
        await store.set("RATE_LIMIT:k", "1000.5", ttl=3)
        redis_client.set.assert_awaited_once_with("RATE_LIMIT:k", "1000.5", ex=3)

    @pytest.mark.asyncio
    async def test_get_decodes_bytes(self):
        redis_client = AsyncMock()
        redis_client.get.return_value = b"1000.5"
        store = RedisStore(redis_client=redis_client)
        assert await store.get("RATE_LIMIT:k") == "1000.5"

    @pytest.mark.asyncio
    async def test_delete(self):
        redis_client = AsyncMock()
        store = RedisStore(redis_client=redis_client)
        await store.delete("a", "b")
        redis_client.delete.assert_awaited_once_with("a", "b")

    def test_lock_uses_separate_namespace(self):
        redis_client = MagicMock()
        store = RedisStore(redis_client=redis_client, lock_timeout=3.0, lock_blocking_timeout=1.0)
        store.lock("RATE_LIMIT:k")
        redis_client.lock.assert_called_once_with(
            "RATE_LIMIT-lock:RATE_LIMIT:k", timeout=3.0, blocking_timeout=1.0
        )

    def test_lock_name_never_equals_a_key(self):
        """Lock names stay outside the key prefix even for keys ending in :lock."""
        store = RedisStore(redis_client=MagicMock(), lock_prefix="api-lock")
        assert store.lock_name("api:x") == "api-lock:api:x"
        assert store.lock_name("api:x") != "api:x:lock"
        assert not store.lock_name("api:x:lock").startswith("api:")

    @pytest.mark.asyncio
    async def test_close(self):
        redis_client = AsyncMock()
        store = RedisStore(redis_client=redis_client)
        await store.close()
        redis_client.aclose.assert_awaited_once()
        await store.close()  # Second close is a no-op
        redis_client.aclose.assert_awaited_once()
