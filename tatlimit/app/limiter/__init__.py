"""GCRA decision engine, models and backends.

Only the dependency-free modules are re-exported here; import backends and
the Limiter facade from their modules (or from the top-level package).
"""

from .engine import Decision, allow_at_most, allow_n, decide
from .models import RETRY_NOT_APPLICABLE, Limit, Mode, Result

__all__ = [
    "Decision",
    "allow_n",
    "allow_at_most",
    "decide",
    "Limit",
    "Mode",
    "Result",
    "RETRY_NOT_APPLICABLE",
]
