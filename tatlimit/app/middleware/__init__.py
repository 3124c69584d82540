"""Middleware package for the limiter."""

from tatlimit.app.middleware.rate_limit import RateLimitMiddleware

__all__ = [
    "RateLimitMiddleware",
]
