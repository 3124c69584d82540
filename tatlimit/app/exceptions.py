"""Custom exceptions for the rate limiter.

A denial is never an exception: it is a ``Result`` with ``allowed == 0``.
Exceptions mean the policy could not be evaluated at all.
"""


class RateLimiterError(Exception):
    """Base class for rate limiter exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class InvalidLimitError(RateLimiterError, ValueError):
    """Raised when a Limit has a non-positive rate, burst or period.

    Checked before any store call because the emission interval
    would be undefined.
    """
    status_code = 500

    def __init__(self, limit: object, detail: str | None = None):
        self.limit = limit
        super().__init__(detail or f"Invalid rate limit: {limit!r}")


class InvalidCostError(RateLimiterError, ValueError):
    """Raised when a decision is requested with a negative cost."""
    status_code = 400

    def __init__(self, cost: int):
        self.cost = cost
        super().__init__(f"Cost must be a non-negative integer, got {cost!r}")


class MalformedStateError(RateLimiterError):
    """Raised when the stored TAT for a key is not a number.

    Treating it as an empty bucket would erase a pending debt, so it
    is surfaced instead.
    """
    status_code = 500

    def __init__(self, key: str, raw_value: object = None):
        self.key = key
        self.raw_value = raw_value
        super().__init__(f"Malformed rate limit state for {key!r}: {raw_value!r}")


class StoreUnavailableError(RateLimiterError):
    """Raised when the state store could not be reached or failed.

    Maps to HTTP 503 Service Unavailable when the caller fails closed.
    """
    status_code = 503

    def __init__(self, key: str | None = None, detail: str = "Rate limit store unavailable"):
        self.key = key
        self.detail = detail
        super().__init__(detail)


class DecisionTimeoutError(StoreUnavailableError):
    """Raised when a decision timed out.

    The atomic operation may already have committed on the store, so the
    outcome is unknown. Callers must not read this as a denial.
    """

    def __init__(self, key: str | None = None, detail: str = "Rate limit decision timed out; outcome unknown"):
        super().__init__(key=key, detail=detail)
