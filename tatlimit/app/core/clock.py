"""Clock used for in-process decisions.

TATs are stored as seconds since 2017-01-01T00:00:00Z. The Lua scripts
compute the same offset from the Redis server clock, so keys written by
either backend stay comparable.
"""

import time
from typing import Callable

# 2017-01-01T00:00:00Z
EPOCH = 1483228800

Clock = Callable[[], float]


def epoch_now() -> float:
    """Return the local wall clock in seconds since EPOCH."""
    return time.time() - EPOCH
