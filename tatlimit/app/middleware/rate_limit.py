"""Rate limiting middleware.

Applies a GCRA limit per API key if available, otherwise per client IP.
What happens when the store cannot be reached is deployment policy,
configured with ``rate_limit_fail_closed``.
"""

import hashlib
import math
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tatlimit.app.core.config import settings
from tatlimit.app.core.logging import get_log_context, get_logger
from tatlimit.app.exceptions import StoreUnavailableError
from tatlimit.app.limiter.models import Limit
from tatlimit.app.limiter.service import Limiter, create_limiter

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512
KEY_DIGEST_LENGTH = 32  # hex chars, 128 bits


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:KEY_DIGEST_LENGTH]


def _client_address(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Charge every request against a GCRA limit before it reaches the app.

    Admitted responses carry the X-RateLimit-* headers; denied requests are
    answered with 429 and never reach the downstream handler.
    """

    def __init__(
        self,
        app,
        limiter: Optional[Limiter] = None,
        limit: Optional[Limit] = None,
        cost: int = 1,
        fail_closed: Optional[bool] = None,
    ):
        super().__init__(app)
        self.limiter = limiter or create_limiter()
        self.limit = (limit or settings.default_limit).validate()
        self.cost = cost
        self.fail_closed = (
            fail_closed if fail_closed is not None else settings.rate_limit_fail_closed
        )

    def _get_client_key(self, request: Request) -> Optional[str]:
        """Derive the logical limiter key for a request.

        A Bearer token wins over the client address. Both are hashed, so raw
        credentials and addresses never reach the store. Returns None for a
        token longer than MAX_API_KEY_LENGTH.
        """
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme == "Bearer":
            token = token.strip()
            if len(token) > MAX_API_KEY_LENGTH:
                return None
            return f"apikey:{_digest(token)}"
        return f"ip:{_digest(_client_address(request))}"

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        key = self._get_client_key(request)
        if key is None:
            return JSONResponse(
                status_code=400,
                content={"error": "invalid_api_key", "message": f"API key too long (max {MAX_API_KEY_LENGTH} characters)"},
            )

        try:
            result = await self.limiter.allow_n(key, self.limit, self.cost)
        except StoreUnavailableError as e:
            return await self._handle_store_failure(request, call_next, key, e)

        headers = result.to_headers()
        if not result.is_allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "Rate limit exceeded. Please try again later.",
                    "retry_after": result.retry_delay,
                },
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response

    async def _handle_store_failure(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
        key: str,
        error: StoreUnavailableError,
    ) -> Response:
        """Apply the fail-open / fail-closed policy to a failed decision."""
        context = get_log_context(
            rate_limit_key=key,
            path=request.url.path,
            method=request.method,
        )
        if self.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered: {error.message}. Request denied.",
                extra=context,
            )
            retry_after = max(1, math.ceil(self.limit.emission_interval))
            return JSONResponse(
                status_code=error.status_code,
                content={
                    "error": "rate_limit_unavailable",
                    "message": "Rate limiting is temporarily unavailable.",
                },
                headers={"Retry-After": str(retry_after)},
            )

        logger.warning(
            f"Rate limiting fail-open triggered: {error.message}. "
            "Request allowed without rate limit check.",
            extra=context,
        )
        return await call_next(request)
