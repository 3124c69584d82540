"""GCRA decision engine.

Generic Cell Rate Algorithm: a leaky bucket that tracks one theoretical
arrival time (TAT) per key instead of a counter/window pair. Every function
here is pure; the caller supplies the stored TAT and ``now`` and is
responsible for persisting ``Decision.new_tat`` atomically.
"""

import math
import re
import sys
from dataclasses import dataclass
from typing import Optional

from tatlimit.app.exceptions import InvalidCostError
from tatlimit.app.limiter.models import RETRY_NOT_APPLICABLE, Limit, Mode, Result

# Quotients this close to an integer are treated as that integer.
FLOAT_TOLERANCE = 1e-9

# Ceiling for the snap tolerance, in permits.
MAX_PERMIT_TOLERANCE = 1e-3

# Plain decimal or scientific notation, nothing float() accepts beyond that
# (no underscores, whitespace, hex, inf or nan), matching Lua tonumber.
_DECIMAL_TAT = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


@dataclass(frozen=True)
class Decision:
    """Result of a decision plus the state write it requires.

    ``new_tat`` is None when nothing must be written.
    """
    result: Result
    new_tat: Optional[float] = None

    @property
    def ttl(self) -> int:
        """Expiry for the written TAT in whole seconds."""
        return math.ceil(self.result.reset_after)


def permit_tolerance(now: float, limit: Limit) -> float:
    """Largest rounding error, in permits, a remaining count at ``now`` can carry.

    TATs are absolute timestamps: every admitting write rounds the stored TAT
    by up to half an ulp of ``now`` (at most |now| * epsilon / 2), and up to
    ``burst`` such writes make up the current offset.
    """
    drift = (limit.burst + 2) * abs(now) * sys.float_info.epsilon
    return min(MAX_PERMIT_TOLERANCE, max(FLOAT_TOLERANCE, drift / limit.emission_interval))


def _snap(value: float, tolerance: float = FLOAT_TOLERANCE) -> float:
    nearest = round(value)
    if abs(value - nearest) < tolerance:
        return float(nearest)
    return value


def _check_cost(cost: int) -> None:
    if cost < 0:
        raise InvalidCostError(cost)


def _tat_offset(stored_tat: Optional[float], now: float) -> float:
    """Seconds the stored TAT lies ahead of ``now``; 0 for an absent or stale TAT."""
    if stored_tat is None:
        return 0.0
    return max(stored_tat - now, 0.0)


def allow_n(stored_tat: Optional[float], now: float, limit: Limit, cost: int) -> Decision:
    """Admit exactly ``cost`` units or nothing.

    All arithmetic is done relative to ``now`` so that the size of the
    timestamps does not leak into ``remaining``.

    Args:
        stored_tat: TAT read from the store, None if absent
        now: Current time in seconds since the epoch
        limit: Validated limit
        cost: Units requested

    Returns:
        Decision with the result and, when admitted at nonzero cost, the TAT to write
    """
    _check_cost(cost)
    emission_interval = limit.emission_interval
    burst_offset = emission_interval * limit.burst
    increment = emission_interval * cost

    tat_offset = _tat_offset(stored_tat, now)

    # now - allow_at, where allow_at = tat + increment - burst_offset
    diff = burst_offset - tat_offset - increment
    remaining = _snap(diff / emission_interval, permit_tolerance(now, limit))

    if remaining < 0:
        return Decision(Result(
            limit=limit,
            allowed=0,
            remaining=0,
            retry_after=-diff,
            reset_after=tat_offset,
        ))

    reset_after = tat_offset + increment
    result = Result(
        limit=limit,
        allowed=cost,
        remaining=math.floor(remaining),
        retry_after=RETRY_NOT_APPLICABLE,
        reset_after=reset_after,
    )
    if cost == 0 or reset_after <= 0:
        return Decision(result)
    return Decision(result, new_tat=now + reset_after)


def allow_at_most(stored_tat: Optional[float], now: float, limit: Limit, n: int) -> Decision:
    """Admit as many of ``n`` units as currently fit, possibly none.

    Args:
        stored_tat: TAT read from the store, None if absent
        now: Current time in seconds since the epoch
        limit: Validated limit
        n: Maximum units requested

    Returns:
        Decision with the result and, when admitted at nonzero cost, the TAT to write
    """
    _check_cost(n)
    emission_interval = limit.emission_interval
    burst_offset = emission_interval * limit.burst

    tat_offset = _tat_offset(stored_tat, now)

    diff = burst_offset - tat_offset
    remaining = _snap(diff / emission_interval, permit_tolerance(now, limit))

    if remaining < 1:
        return Decision(Result(
            limit=limit,
            allowed=0,
            remaining=0,
            retry_after=emission_interval - diff,
            reset_after=tat_offset,
        ))

    cost = min(n, math.floor(remaining))
    remaining -= cost

    reset_after = tat_offset + emission_interval * cost
    result = Result(
        limit=limit,
        allowed=cost,
        remaining=math.floor(remaining),
        retry_after=RETRY_NOT_APPLICABLE,
        reset_after=reset_after,
    )
    if cost == 0 or reset_after <= 0:
        return Decision(result)
    return Decision(result, new_tat=now + reset_after)


def decide(mode: Mode, stored_tat: Optional[float], now: float, limit: Limit, cost: int) -> Decision:
    """Dispatch to the engine function for ``mode``."""
    if mode is Mode.ALLOW_AT_MOST:
        return allow_at_most(stored_tat, now, limit, cost)
    return allow_n(stored_tat, now, limit, cost)


def parse_tat(raw: object) -> Optional[float]:
    """Decode a stored TAT.

    Returns None for an absent value and raises ValueError for anything that
    is not a finite decimal number.
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    if not isinstance(raw, str) or not _DECIMAL_TAT.fullmatch(raw):
        raise ValueError(f"not a decimal TAT: {raw!r}")
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"non-finite TAT {raw!r}")
    return value


def format_tat(tat: float) -> str:
    """Encode a TAT as a decimal string."""
    return repr(tat)
