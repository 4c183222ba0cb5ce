"""Tests for global exception handlers.

Validates that all exception types are handled consistently with
proper HTTP status codes, error format, and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from abuse_guard.core.errors import (
    AppError,
    AuthenticationAppError,
    CounterStoreAppError,
    PolicyNotFoundAppError,
    RateLimitedAppError,
    UnauthenticatedAppError,
    ValidationAppError,
)
from abuse_guard.core.exception_handlers import general_exception_handler, setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    return TestClient(app_with_handlers)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_validation_error_returns_400(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-validation")
        async def endpoint():
            raise ValidationAppError(code="invalid_limit", message="limit must be >= 1")

        response = client.get("/test-validation")

        assert response.status_code == 400
        data = response.json()
        assert data["error"]["code"] == "invalid_limit"
        assert data["error"]["message"] == "limit must be >= 1"
        assert "request_id" in data["error"]
        assert "details" not in data["error"]

    def test_rate_limited_returns_429_with_headers(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-rate-limited")
        async def endpoint():
            raise RateLimitedAppError(
                code="rate_limited",
                message="Rate limit exceeded for LOGIN. Retry in 42s.",
                details={
                    "action": "LOGIN",
                    "limit": 10,
                    "remaining": 0,
                    "retry_after_seconds": 42,
                    "reset_at": 1_700_000_100_500,
                },
            )

        response = client.get("/test-rate-limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == "1700000101"
        details = response.json()["error"]["details"]
        assert details["action"] == "LOGIN"
        assert details["retry_after_seconds"] == 42
        assert details["reset_at"] == 1_700_000_100_500

    def test_unauthenticated_returns_401(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-unauthenticated")
        async def endpoint():
            raise UnauthenticatedAppError(code="unauthenticated", message="Missing subject id")

        response = client.get("/test-unauthenticated")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthenticated"

    def test_authentication_error_returns_403(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-auth")
        async def endpoint():
            raise AuthenticationAppError(code="invalid_api_key", message="Invalid or missing admin API key")

        response = client.get("/test-auth")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_api_key"

    def test_unknown_action_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-policy")
        async def endpoint():
            raise PolicyNotFoundAppError(code="unknown_action", message="No policy", details={"action": "X"})

        response = client.get("/test-policy")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "unknown_action"

    def test_counter_store_error_returns_503(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-store")
        async def endpoint():
            raise CounterStoreAppError(code="counter_store_timeout", message="Timed out")

        response = client.get("/test-store")

        assert response.status_code == 503


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_general_exception_handler_logic(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = RuntimeError("Unexpected error: redis connection failed")
        response = asyncio.run(general_exception_handler(request, exc))

        data = json.loads(bytes(response.body).decode())
        assert response.status_code == 500
        assert data["error"]["code"] == "internal_server_error"
        assert "redis connection" not in data["error"]["message"]
        assert "request_id" in data["error"]

    def test_general_exception_handler_never_leaks_stack_trace(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        response = asyncio.run(general_exception_handler(request, ValueError("Test error with details")))

        response_text = bytes(response.body).decode()
        assert "Traceback" not in response_text
        assert "ValueError" not in response_text

    def test_unhandled_route_error_returns_500(self, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-crash")
        async def endpoint():
            raise RuntimeError("boom")

        client = TestClient(app_with_handlers, raise_server_exceptions=False)
        response = client.get("/test-crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_server_error"


def test_setup_exception_handlers_registers_handlers(app_with_handlers: FastAPI):
    assert AppError in app_with_handlers.exception_handlers
    assert Exception in app_with_handlers.exception_handlers
