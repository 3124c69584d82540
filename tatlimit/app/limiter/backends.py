"""Atomic state store adapters for GCRA decisions.

Every backend implements the same capability set: ``evaluate`` runs the
read-compute-write sequence for one key as a single indivisible step, and
``reset`` deletes the key. Which mechanism provides the atomicity is the
backend's business.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import redis

from tatlimit.app.core.clock import Clock, epoch_now
from tatlimit.app.core.logging import get_logger
from tatlimit.app.core.store import StateStore
from tatlimit.app.exceptions import MalformedStateError
from tatlimit.app.limiter.engine import decide, format_tat, parse_tat
from tatlimit.app.limiter.models import Limit, Mode, Result
from tatlimit.app.limiter.redis_lua import (
    ALLOW_AT_MOST_SCRIPT,
    ALLOW_N_SCRIPT,
    MALFORMED_TAT_MARKER,
)

logger = get_logger(__name__)


class RateLimitBackend(ABC):
    """Abstract base class for rate limit backends."""

    name: str = "abstract"

    @abstractmethod
    async def evaluate(self, key: str, limit: Limit, cost: int, mode: Mode) -> Result:
        """Run one decision for ``key`` atomically.

        Args:
            key: Namespaced store key
            limit: Validated limit
            cost: Units requested (non-negative)
            mode: ALLOW_N or ALLOW_AT_MOST

        Returns:
            Result of the decision
        """

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Delete the stored TAT for ``key``. Missing keys are not an error."""

    async def close(self) -> None:
        """Release the connection owned by the backend."""


class RedisScriptBackend(RateLimitBackend):
    """Redis backend running the decision as a server-side Lua script.

    The script reads the Redis clock, so every caller shares one notion
    of now regardless of local clock skew.
    """

    name = "redis"

    _SCRIPTS = {
        Mode.ALLOW_N: ALLOW_N_SCRIPT,
        Mode.ALLOW_AT_MOST: ALLOW_AT_MOST_SCRIPT,
    }

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
    ):
        """Initialize Redis script backend.

        Args:
            redis_client: Optional ``redis.asyncio`` client instance
            redis_url: Redis connection URL, used when no client is given
        """
        if redis_client is None and redis_url is None:
            raise ValueError("RedisScriptBackend needs a redis_client or a redis_url")
        self._redis = redis_client
        self._redis_url = redis_url

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def evaluate(self, key: str, limit: Limit, cost: int, mode: Mode) -> Result:
        redis_client = self._get_redis()
        try:
            reply = await redis_client.eval(
                self._SCRIPTS[mode],
                1,  # Number of keys
                key,  # KEYS[1]
                limit.burst,  # ARGV[1]
                limit.rate,  # ARGV[2]
                float(limit.period),  # ARGV[3]
                cost,  # ARGV[4]
            )
        except redis.ResponseError as e:
            if MALFORMED_TAT_MARKER in str(e):
                raw = str(e).split(" ", 1)[-1]
                logger.error(f"Malformed TAT stored at {key}: {raw!r}")
                raise MalformedStateError(key, raw) from e
            raise
        return self._parse_reply(limit, reply)

    @staticmethod
    def _parse_reply(limit: Limit, reply: Any) -> Result:
        allowed, remaining, retry_after, reset_after = reply
        if isinstance(retry_after, bytes):
            retry_after = retry_after.decode()
        if isinstance(reset_after, bytes):
            reset_after = reset_after.decode()
        return Result(
            limit=limit,
            allowed=int(allowed),
            remaining=int(remaining),
            retry_after=float(retry_after),
            reset_after=float(reset_after),
        )

    async def reset(self, key: str) -> None:
        await self._get_redis().delete(key)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class LockedStoreBackend(RateLimitBackend):
    """Backend running the engine in-process under a key-scoped lock.

    Works with any StateStore: the store's lock serializes the GET, the
    computation and the SET EX for one key. ``now`` comes from the local
    clock, so callers on different machines must keep their clocks in sync.
    """

    def __init__(self, store: StateStore, clock: Clock = epoch_now):
        self._store = store
        self._clock = clock
        self.name = f"lock:{type(store).__name__}"

    @property
    def store(self) -> StateStore:
        return self._store

    async def _read_tat(self, key: str) -> Optional[float]:
        raw = await self._store.get(key)
        try:
            return parse_tat(raw)
        except ValueError as e:
            logger.error(f"Malformed TAT stored at {key}: {raw!r}")
            raise MalformedStateError(key, raw) from e

    async def evaluate(self, key: str, limit: Limit, cost: int, mode: Mode) -> Result:
        async with self._store.lock(key):
            stored_tat = await self._read_tat(key)
            decision = decide(mode, stored_tat, self._clock(), limit, cost)
            if decision.new_tat is not None:
                await self._store.set(key, format_tat(decision.new_tat), decision.ttl)
        return decision.result

    async def reset(self, key: str) -> None:
        async with self._store.lock(key):
            await self._store.delete(key)

    async def close(self) -> None:
        await self._store.close()
