"""Global exception handlers for consistent error responses.

This module provides FastAPI exception handlers that intercept all errors
(domain and unexpected) and return consistent JSON responses with proper
HTTP status codes and traceability.

Design:
- AppError subclasses → appropriate HTTP status (400, 401, 403, 429, 500, 503)
- Rate limit denials carry Retry-After and X-RateLimit-* headers
- Unexpected Exception → generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

import logging
import math

from fastapi import Request
from fastapi.responses import JSONResponse

from abuse_guard.core.errors import (
    AppError,
    AuthenticationAppError,
    CounterStoreAppError,
    PolicyNotFoundAppError,
    RateLimitedAppError,
    UnauthenticatedAppError,
)
from abuse_guard.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, RateLimitedAppError):
        return 429
    if isinstance(exc, UnauthenticatedAppError):
        return 401
    if isinstance(exc, AuthenticationAppError):
        return 403
    if isinstance(exc, PolicyNotFoundAppError):
        return 500
    if isinstance(exc, CounterStoreAppError):
        return 503
    return 400


def _rate_limit_headers(exc: RateLimitedAppError) -> dict[str, str]:
    details = exc.details or {}
    headers = {"Retry-After": str(exc.retry_after_seconds)}
    if "limit" in details:
        headers["X-RateLimit-Limit"] = str(details["limit"])
    headers["X-RateLimit-Remaining"] = str(details.get("remaining", 0))
    if "reset_at" in details:
        headers["X-RateLimit-Reset"] = str(math.ceil(details["reset_at"] / 1000))
    return headers


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    Routes domain errors to HTTP status codes:
    - RateLimitedAppError → 429 Too Many Requests (with retry headers)
    - UnauthenticatedAppError → 401 Unauthorized
    - AuthenticationAppError → 403 Forbidden
    - PolicyNotFoundAppError → 500 (misconfigured policy table)
    - CounterStoreAppError → 503 (never expected: the evaluator fails open)
    - anything else → 400 Bad Request

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = _status_for(exc)

    log_extra = {
        "error_code": exc.code,
        "error_message": exc.message,
        "status_code": status_code,
        "has_details": bool(exc.details),
        "request_id": get_request_id(),
    }
    if isinstance(exc, RateLimitedAppError):
        # Denials are expected; the security audit event already covers them
        logger.info("app_error_handled", extra=log_extra)
    elif status_code >= 500:
        logger.error("app_error_handled", extra=log_extra)
    else:
        logger.warning("app_error_handled", extra=log_extra)

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }

    if exc.details:
        error_content["details"] = exc.details

    headers = _rate_limit_headers(exc) if isinstance(exc, RateLimitedAppError) else None

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic
    message, so no stack traces leak to clients.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with FastAPI app.

    Must be called during app initialization, before route registration.
    Order matters: specific handlers registered before general fallback.

    Args:
        app: FastAPI application instance.
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
