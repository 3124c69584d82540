"""Distributed GCRA rate limiter backed by a shared atomic store."""

from tatlimit.app.core.store import InMemoryStore, RedisStore, StateStore
from tatlimit.app.exceptions import (
    DecisionTimeoutError,
    InvalidCostError,
    InvalidLimitError,
    MalformedStateError,
    RateLimiterError,
    StoreUnavailableError,
)
from tatlimit.app.limiter.backends import (
    LockedStoreBackend,
    RateLimitBackend,
    RedisScriptBackend,
)
from tatlimit.app.limiter.models import (
    RETRY_NOT_APPLICABLE,
    Limit,
    Mode,
    Result,
    per_hour,
    per_minute,
    per_second,
)
from tatlimit.app.limiter.service import Limiter, create_limiter

__version__ = "0.1.0"

__all__ = [
    # Models
    "Limit",
    "Mode",
    "Result",
    "RETRY_NOT_APPLICABLE",
    "per_second",
    "per_minute",
    "per_hour",
    # Backends
    "RateLimitBackend",
    "RedisScriptBackend",
    "LockedStoreBackend",
    # Stores
    "StateStore",
    "InMemoryStore",
    "RedisStore",
    # Main classes
    "Limiter",
    "create_limiter",
    # Errors
    "RateLimiterError",
    "InvalidLimitError",
    "InvalidCostError",
    "MalformedStateError",
    "StoreUnavailableError",
    "DecisionTimeoutError",
]
