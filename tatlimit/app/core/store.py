"""State store abstraction for the limiter.

Provides the GET / SET EX / DEL operations and a key-scoped lock that the
lock-based backend needs, with in-memory and Redis implementations.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator
import asyncio
import math

from tatlimit.app.core.clock import Clock, epoch_now

DEFAULT_LOCK_PREFIX = "RATE_LIMIT-lock"


@dataclass
class _StoreEntry:
    """Internal store entry with TTL tracking."""

    value: str
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


@dataclass
class _KeyLock:
    """Lock for one key and the number of tasks holding or awaiting it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class StateStore(ABC):
    """Abstract base class for TAT state stores.

    Values are decimal strings. Implementations must make ``lock`` exclusive
    per key for every caller sharing the store.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Retrieve a value from the store.

        Args:
            key: The store key to look up.

        Returns:
            The stored value, or None if not found or expired.
        """

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """Store a value with an expiry.

        Args:
            key: The store key.
            value: The value to store.
            ttl: Time-to-live in whole seconds.
        """

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """Remove keys from the store. Missing keys are ignored."""

    @abstractmethod
    def lock(self, key: str) -> Any:
        """Return an async context manager holding the lock for ``key``."""

    async def close(self) -> None:
        """Release any connection held by the store."""


class InMemoryStore(StateStore):
    """In-memory store with TTL support and per-key asyncio locks.

    Only serializes callers inside one event loop of one process. Expiry
    follows the injected clock so it agrees with the limiter's notion of now.
    """

    def __init__(self, clock: Clock = epoch_now) -> None:
        self._data: dict[str, _StoreEntry] = {}
        self._locks: dict[str, _KeyLock] = {}
        self._clock = clock

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry.value

    async def set(self, key: str, value: str, ttl: int) -> None:
        expires_at = self._clock() + ttl if ttl > 0 else None
        self._data[key] = _StoreEntry(value=value, expires_at=expires_at)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        key_lock = self._locks.get(key)
        if key_lock is None:
            key_lock = self._locks[key] = _KeyLock()
        key_lock.users += 1
        try:
            async with key_lock.lock:
                yield
        finally:
            key_lock.users -= 1
            if key_lock.users == 0:
                del self._locks[key]

    def ttl(self, key: str) -> int | None:
        """Return remaining whole seconds before ``key`` expires, if any."""
        entry = self._data.get(key)
        if entry is None or entry.expires_at is None:
            return None
        return max(0, math.ceil(entry.expires_at - self._clock()))

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the store.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired_keys = [
            key for key, entry in self._data.items() if entry.is_expired(now)
        ]
        for key in expired_keys:
            del self._data[key]
        return len(expired_keys)


class RedisStore(StateStore):
    """Redis-based store.

    The lock is a redis-py distributed lock on ``<lock_prefix>:<key>`` so
    callers in other processes and on other machines are serialized too.
    ``lock_prefix`` must differ from the key prefix of the stored TATs so a
    lock name can never be a TAT key.

    Example:
        >>> store = RedisStore(redis_url="redis://localhost:6379/0")
        >>> await store.set("RATE_LIMIT:user_1", "273.5", ttl=1)
    """

    def __init__(
        self,
        redis_client: Any | None = None,
        redis_url: str | None = None,
        lock_timeout: float = 5.0,
        lock_blocking_timeout: float = 2.0,
        lock_prefix: str = DEFAULT_LOCK_PREFIX,
    ) -> None:
        """Initialize the Redis store.

        Args:
            redis_client: Optional ``redis.asyncio`` client instance.
            redis_url: Redis connection URL, used when no client is given.
            lock_timeout: Seconds after which a held lock auto-expires.
            lock_blocking_timeout: Seconds to wait when acquiring a lock.
            lock_prefix: Namespace for lock names.
        """
        if redis_client is None and redis_url is None:
            raise ValueError("RedisStore needs a redis_client or a redis_url")
        self._redis = redis_client
        self._redis_url = redis_url
        self._lock_timeout = lock_timeout
        self._lock_blocking_timeout = lock_blocking_timeout
        self._lock_prefix = lock_prefix

    def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> str | None:
        value = await self._get_client().get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._get_client().set(key, value, ex=ttl)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._get_client().delete(*keys)

    def lock_name(self, key: str) -> str:
        return f"{self._lock_prefix}:{key}"

    def lock(self, key: str) -> Any:
        # redis.asyncio.lock.Lock is itself an async context manager and
        # raises LockError when it cannot be acquired in time.
        return self._get_client().lock(
            self.lock_name(key),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_blocking_timeout,
        )

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
