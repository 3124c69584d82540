"""Shared fixtures for the limiter tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest

# A realistic now: September 2026 in seconds since 2017-01-01
LATE_NOW = 307234567.123456


class FakeClock:
    """Manually advanced clock returning seconds since the limiter epoch."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def late_clock():
    """Clock at a real-world epoch offset, where timestamps carry rounding noise."""
    return FakeClock(LATE_NOW)


@pytest.fixture
def fake_redis():
    """Redis emulator with Lua support, so the real scripts run."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


@pytest.fixture
def mock_redis(clock):
    """Create a mock Redis client for testing.

    Covers the GET / SET EX / DEL and lock calls RedisStore makes, with
    expiry following the fake clock.
    """
    redis_client = MagicMock()
    redis_client.data = {}
    redis_client.ttls = {}
    redis_client.locks = {}

    def _expire(key):
        if key in redis_client.ttls and redis_client.ttls[key] <= clock():
            redis_client.data.pop(key, None)
            redis_client.ttls.pop(key, None)

    async def mock_get(key):
        _expire(key)
        return redis_client.data.get(key)

    async def mock_set(key, value, ex=None):
        redis_client.data[key] = str(value)
        if ex is not None:
            redis_client.ttls[key] = clock() + ex
        return True

    async def mock_delete(*keys):
        removed = 0
        for key in keys:
            if redis_client.data.pop(key, None) is not None:
                removed += 1
            redis_client.ttls.pop(key, None)
        return removed

    def mock_lock(name, timeout=None, blocking_timeout=None):
        lock = redis_client.locks.get(name)
        if lock is None:
            lock = redis_client.locks[name] = asyncio.Lock()
        return lock

    redis_client.get = mock_get
    redis_client.set = mock_set
    redis_client.delete = mock_delete
    redis_client.lock = mock_lock
    redis_client.aclose = AsyncMock()

    return redis_client
