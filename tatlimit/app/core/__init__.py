"""Core utilities for the limiter."""

from tatlimit.app.core.clock import EPOCH, epoch_now
from tatlimit.app.core.config import settings
from tatlimit.app.core.logging import get_logger, setup_logging
from tatlimit.app.core.store import InMemoryStore, RedisStore, StateStore

__all__ = [
    "EPOCH",
    "epoch_now",
    "settings",
    "get_logger",
    "setup_logging",
    "StateStore",
    "InMemoryStore",
    "RedisStore",
]
