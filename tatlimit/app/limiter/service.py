"""Limiter facade over a rate limit backend.

Validates inputs, namespaces keys and turns store failures into
StoreUnavailableError so callers can tell "denied by policy" apart from
"could not evaluate policy". There are no retries here; resilience policy
belongs to the caller.
"""

import asyncio
from typing import Any, Optional

import redis

from tatlimit.app.core.clock import Clock, epoch_now
from tatlimit.app.core.config import settings
from tatlimit.app.core.logging import decision_context, get_log_context, get_logger
from tatlimit.app.core.store import InMemoryStore, RedisStore
from tatlimit.app.exceptions import (
    DecisionTimeoutError,
    InvalidCostError,
    StoreUnavailableError,
)
from tatlimit.app.limiter.backends import (
    LockedStoreBackend,
    RateLimitBackend,
    RedisScriptBackend,
)
from tatlimit.app.limiter.models import DEFAULT_KEY_PREFIX, Limit, Mode, Result

logger = get_logger(__name__)

STORE_EXCEPTIONS = (
    redis.ConnectionError,
    redis.TimeoutError,
    redis.RedisError,
    OSError,
)


class Limiter:
    """GCRA rate limiter bound to one backend.

    Holds no decision state of its own; every call re-reads the stored TAT
    through the backend.

    Example:
        >>> limiter = Limiter(LockedStoreBackend(InMemoryStore()))
        >>> result = await limiter.allow("user_1234", per_second(5))
        >>> if result.allowed:
        ...     handle_request()
    """

    def __init__(self, backend: RateLimitBackend, key_prefix: str = DEFAULT_KEY_PREFIX):
        self._backend = backend
        self.key_prefix = key_prefix

    @property
    def backend(self) -> RateLimitBackend:
        return self._backend

    def make_key(self, key: str) -> str:
        """Namespace a logical key as ``<prefix>:<key>``."""
        return f"{self.key_prefix}:{key}"

    async def allow(self, key: str, limit: Limit) -> Result:
        """Admit a single request. Shorthand for ``allow_n(key, limit, 1)``."""
        return await self.allow_n(key, limit, 1)

    async def allow_n(self, key: str, limit: Limit, n: int) -> Result:
        """Admit exactly ``n`` units or none.

        Args:
            key: Logical key (user ID, IP address, API token hash)
            limit: Rate limit to enforce
            n: Units to consume; 0 admits without touching state

        Returns:
            Result with allowed == n on success, 0 on denial

        Raises:
            InvalidLimitError: limit has a non-positive rate, burst or period
            InvalidCostError: n is negative
            MalformedStateError: the stored TAT is not a number
            StoreUnavailableError: the store failed; outcome may be unknown
        """
        return await self._evaluate(key, limit, n, Mode.ALLOW_N)

    async def allow_at_most(self, key: str, limit: Limit, n: int) -> Result:
        """Admit as many of ``n`` units as currently fit.

        Raises the same exceptions as allow_n.
        """
        return await self._evaluate(key, limit, n, Mode.ALLOW_AT_MOST)

    async def reset(self, key: str) -> None:
        """Forget all state for ``key``. Succeeds when nothing is stored."""
        store_key = self.make_key(key)
        try:
            await self._backend.reset(store_key)
        except asyncio.TimeoutError as e:
            raise DecisionTimeoutError(store_key) from e
        except STORE_EXCEPTIONS as e:
            logger.error(
                f"Rate limit reset failed for {store_key}: {e}",
                extra=get_log_context(rate_limit_key=store_key, backend=self._backend.name),
            )
            raise StoreUnavailableError(store_key, f"Rate limit reset failed: {e}") from e
        logger.debug(
            f"Rate limit state reset for {store_key}",
            extra=get_log_context(rate_limit_key=store_key, backend=self._backend.name),
        )

    async def _evaluate(self, key: str, limit: Limit, cost: int, mode: Mode) -> Result:
        limit.validate()
        if cost < 0:
            raise InvalidCostError(cost)

        store_key = self.make_key(key)
        try:
            result = await self._backend.evaluate(store_key, limit, cost, mode)
        except asyncio.TimeoutError as e:
            # The script may have committed; never report this as a denial.
            logger.warning(
                f"Rate limit decision timed out for {store_key}",
                extra=get_log_context(rate_limit_key=store_key, backend=self._backend.name),
            )
            raise DecisionTimeoutError(store_key) from e
        except redis.TimeoutError as e:
            logger.warning(
                f"Redis timeout during rate limit decision for {store_key}: {e}",
                extra=get_log_context(rate_limit_key=store_key, backend=self._backend.name),
            )
            raise DecisionTimeoutError(store_key) from e
        except STORE_EXCEPTIONS as e:
            logger.error(
                f"Rate limit store error for {store_key}: {e}",
                extra=get_log_context(rate_limit_key=store_key, backend=self._backend.name),
            )
            raise StoreUnavailableError(store_key, f"Rate limit store error: {e}") from e

        context = decision_context(result, store_key, self._backend.name)
        if result.is_allowed:
            logger.debug(
                f"Rate limit {mode.value} admitted {result.allowed}/{cost} for {store_key}",
                extra=context,
            )
        else:
            logger.info(f"Rate limit exceeded for {store_key} ({limit})", extra=context)
        return result

    async def close(self) -> None:
        """Close the backend and its store connection."""
        await self._backend.close()


def create_limiter(
    backend: Optional[str] = None,
    redis_url: Optional[str] = None,
    redis_client: Optional[Any] = None,
    key_prefix: Optional[str] = None,
    clock: Clock = epoch_now,
) -> Limiter:
    """Build a Limiter with the backend named in settings.

    Args:
        backend: 'redis', 'redis_lock' or 'memory'; None uses settings.rate_limit_backend
        redis_url: Redis connection URL. If not provided, uses settings.redis_url
        redis_client: Existing ``redis.asyncio`` client to reuse
        key_prefix: Key namespace. If not provided, uses settings.rate_limit_key_prefix
        clock: Clock for in-process backends

    Returns:
        A new Limiter; each call builds a new backend
    """
    backend = backend or settings.rate_limit_backend
    key_prefix = key_prefix or settings.rate_limit_key_prefix
    url = redis_url or settings.redis_url

    rate_limit_backend: RateLimitBackend
    if backend == "redis":
        rate_limit_backend = RedisScriptBackend(redis_client=redis_client, redis_url=url)
    elif backend == "redis_lock":
        store = RedisStore(
            redis_client=redis_client,
            redis_url=url,
            lock_timeout=settings.rate_limit_lock_timeout,
            lock_blocking_timeout=settings.rate_limit_lock_blocking_timeout,
            lock_prefix=f"{key_prefix}-lock",
        )
        rate_limit_backend = LockedStoreBackend(store, clock=clock)
    elif backend == "memory":
        rate_limit_backend = LockedStoreBackend(InMemoryStore(clock=clock), clock=clock)
    else:
        raise ValueError(f"Unknown rate limit backend: {backend!r}")

    logger.info(f"Using {rate_limit_backend.name} rate limiter backend")
    return Limiter(rate_limit_backend, key_prefix=key_prefix)
