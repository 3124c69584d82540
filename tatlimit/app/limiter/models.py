"""Rate limiting data models.

This module contains the Limit configuration, the decision Result and the
evaluation Mode shared by the engine and every backend.
"""

import enum
import math
from dataclasses import dataclass
from typing import Dict, Optional

from tatlimit.app.exceptions import InvalidLimitError

DEFAULT_KEY_PREFIX = "RATE_LIMIT"

# retry_after value meaning "no retry needed"
RETRY_NOT_APPLICABLE = -1.0

_PERIOD_UNITS = {1.0: "s", 60.0: "m", 3600.0: "h"}


class Mode(str, enum.Enum):
    """How a decision treats the requested cost."""
    ALLOW_N = "allow_n"              # all or nothing
    ALLOW_AT_MOST = "allow_at_most"  # as many as fit, up to cost


@dataclass(frozen=True)
class Limit:
    """Rate limit configuration.

    Attributes:
        rate: Permits emitted per period
        burst: Permits that may be consumed at once
        period: Period length in seconds
    """
    rate: int
    burst: int
    period: float

    @property
    def emission_interval(self) -> float:
        """Seconds one permit costs."""
        return self.period / self.rate

    @property
    def burst_offset(self) -> float:
        return self.emission_interval * self.burst

    def validate(self) -> "Limit":
        """Raise InvalidLimitError unless rate, burst and period are positive."""
        if self.rate <= 0 or self.burst <= 0 or self.period <= 0:
            raise InvalidLimitError(
                self,
                f"rate, burst and period must be positive, got {self}",
            )
        return self

    def is_zero(self) -> bool:
        return self.rate == 0 and self.burst == 0 and self.period == 0

    def __str__(self) -> str:
        unit = _PERIOD_UNITS.get(float(self.period), f"{self.period:g}s")
        return f"{self.rate} req/{unit} (burst {self.burst})"


def per_second(rate: int) -> Limit:
    """Limit of ``rate`` requests per second with burst equal to rate."""
    return Limit(rate=rate, burst=rate, period=1.0)


def per_minute(rate: int) -> Limit:
    """Limit of ``rate`` requests per minute with burst equal to rate."""
    return Limit(rate=rate, burst=rate, period=60.0)


def per_hour(rate: int) -> Limit:
    """Limit of ``rate`` requests per hour with burst equal to rate."""
    return Limit(rate=rate, burst=rate, period=3600.0)


@dataclass(frozen=True)
class Result:
    """Outcome of a rate limit decision.

    Attributes:
        limit: The limit the decision was made against
        allowed: Units admitted (0 on denial)
        remaining: Whole permits still available
        retry_after: Seconds until the next permit, or -1 when admitted
        reset_after: Seconds until the bucket is empty again
    """
    limit: Limit
    allowed: int
    remaining: int
    retry_after: float
    reset_after: float

    @property
    def is_allowed(self) -> bool:
        return self.allowed > 0 or self.retry_after == RETRY_NOT_APPLICABLE

    @property
    def retry_delay(self) -> Optional[float]:
        """retry_after with the -1 sentinel replaced by None."""
        if self.retry_after == RETRY_NOT_APPLICABLE:
            return None
        return self.retry_after

    def to_headers(self) -> Dict[str, str]:
        """Render the standard X-RateLimit-* response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit.burst),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(max(0, math.ceil(self.reset_after))),
        }
        if self.retry_delay is not None:
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_delay)))
        return headers

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "limit": str(self.limit),
            "allowed": self.allowed,
            "remaining": self.remaining,
            "retry_after": self.retry_after,
            "reset_after": self.reset_after,
        }
