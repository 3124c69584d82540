"""Tests for rate limiting middleware."""

import hashlib
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
import redis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tatlimit.app.limiter.backends import RateLimitBackend
from tatlimit.app.limiter.models import Limit
from tatlimit.app.limiter.service import Limiter, create_limiter
from tatlimit.app.middleware.rate_limit import RateLimitMiddleware

LIMIT = Limit(rate=2, burst=2, period=60.0)


def build_app(limiter, fail_closed=False, limit=LIMIT):
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"status": "ok"}

    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        limit=limit,
        fail_closed=fail_closed,
    )
    return app


@pytest.fixture
def broken_limiter():
    """Limiter whose backend cannot reach the store."""
    backend = MagicMock(spec=RateLimitBackend)
    backend.name = "broken"
    backend.evaluate = AsyncMock(side_effect=redis.ConnectionError("Connection refused"))
    return Limiter(backend)


class TestRateLimitMiddleware:
    """Tests for request handling."""

    def test_admitted_requests_carry_headers(self, clock):
        app = build_app(create_limiter("memory", clock=clock))
        with TestClient(app) as client:
            first = client.get("/ping")
            second = client.get("/ping")

        assert first.status_code == 200
        assert first.json() == {"status": "ok"}
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert first.headers["X-RateLimit-Reset"] == "30"
        assert "Retry-After" not in first.headers
        assert second.headers["X-RateLimit-Remaining"] == "0"

    def test_denied_request_gets_429(self, clock):
        app = build_app(create_limiter("memory", clock=clock))
        with TestClient(app) as client:
            client.get("/ping")
            client.get("/ping")
            response = client.get("/ping")

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["retry_after"] == 30.0
        assert response.headers["Retry-After"] == "30"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == "60"

    def test_request_admitted_after_retry_after(self, clock):
        app = build_app(create_limiter("memory", clock=clock))
        with TestClient(app) as client:
            client.get("/ping")
            client.get("/ping")
            denied = client.get("/ping")
            clock.advance(float(denied.headers["Retry-After"]))
            response = client.get("/ping")

        assert response.status_code == 200

    def test_api_keys_limited_independently(self, clock):
        app = build_app(create_limiter("memory", clock=clock))
        with TestClient(app) as client:
            for _ in range(2):
                client.get("/ping", headers={"Authorization": "Bearer key-a"})
            blocked = client.get("/ping", headers={"Authorization": "Bearer key-a"})
            other = client.get("/ping", headers={"Authorization": "Bearer key-b"})

        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_api_key_too_long(self, clock):
        app = build_app(create_limiter("memory", clock=clock))
        with TestClient(app) as client:
            response = client.get("/ping", headers={"Authorization": "Bearer " + "x" * 513})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_api_key"

    def test_fail_open_when_store_unavailable(self, broken_limiter):
        app = build_app(broken_limiter, fail_closed=False)
        with TestClient(app) as client:
            response = client.get("/ping")

        assert response.status_code == 200
        assert "X-RateLimit-Remaining" not in response.headers

    def test_fail_closed_when_store_unavailable(self, broken_limiter):
        app = build_app(broken_limiter, fail_closed=True)
        with TestClient(app) as client:
            response = client.get("/ping")

        assert response.status_code == 503
        assert response.json()["error"] == "rate_limit_unavailable"
        assert response.headers["Retry-After"] == "30"


class TestClientKey:
    """Tests for rate limit key extraction."""

    @pytest.fixture
    def middleware(self, clock):
        return RateLimitMiddleware(
            Mock(),
            limiter=create_limiter("memory", clock=clock),
            limit=LIMIT,
        )

    def test_get_client_key_from_api_key(self, middleware):
        request = Mock()
        request.headers = {"Authorization": "Bearer test_api_key_123"}
        request.client.host = "127.0.0.1"

        key = middleware._get_client_key(request)
        expected_hash = hashlib.sha256(b"test_api_key_123").hexdigest()[:32]
        assert key == f"apikey:{expected_hash}"
        assert "test_api_key_123" not in key

    def test_get_client_key_from_ip(self, middleware):
        request = Mock()
        request.headers = {}
        request.client.host = "192.168.1.1"

        key = middleware._get_client_key(request)
        expected_hash = hashlib.sha256(b"192.168.1.1").hexdigest()[:32]
        assert key == f"ip:{expected_hash}"

    def test_get_client_key_from_x_forwarded_for(self, middleware):
        request = Mock()
        request.headers = {"X-Forwarded-For": "10.0.0.1, 192.168.1.1"}
        request.client.host = "127.0.0.1"

        key = middleware._get_client_key(request)
        expected_hash = hashlib.sha256(b"10.0.0.1").hexdigest()[:32]
        assert key == f"ip:{expected_hash}"

    def test_get_client_key_without_client(self, middleware):
        request = Mock()
        request.headers = {}
        request.client = None

        key = middleware._get_client_key(request)
        assert key == f"ip:{hashlib.sha256(b'unknown').hexdigest()[:32]}"

    def test_default_limit_from_settings(self, clock):
        middleware = RateLimitMiddleware(Mock(), limiter=create_limiter("memory", clock=clock))
        assert middleware.limit.rate >= 1
        assert middleware.cost == 1
