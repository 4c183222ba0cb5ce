"""Caller identity and admin API key authentication.

Two concerns live here:
- Subject identity: user-scoped checks read the authenticated subject id
  from a trusted header set by the upstream auth layer.
- Admin access: admin endpoints are validated against a comma-separated list
  of API keys from environment variables.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Header, Request

from abuse_guard.core.config import settings
from abuse_guard.core.errors import AuthenticationAppError, UnauthenticatedAppError
from abuse_guard.core.logging import hash_identifier

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Examples:
        >>> parse_api_keys("key1, key2 , key3 ")
        {'key1', 'key2', 'key3'}
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def validate_admin_api_key(provided_key: str | None) -> None:
    """Validate that the provided key matches a configured admin key.

    Pure validation logic without FastAPI dependencies for easy testing.

    Raises:
        AuthenticationAppError: If the key is missing/invalid, or admin auth
            is required but no keys are configured.
    """
    if not settings.app.admin_api_key_required:
        return

    valid_keys = parse_api_keys(settings.app.admin_api_keys)

    if not valid_keys:
        logger.error(
            "admin_auth.failed",
            extra={"reason": "admin_api_keys_not_configured"},
        )
        raise AuthenticationAppError(
            code="admin_api_keys_not_configured",
            message="Admin authentication is enabled but no admin keys are configured",
            details={"hint": "Set APP_ADMIN_API_KEYS or disable with APP_ADMIN_API_KEY_REQUIRED=false"},
        )

    if not provided_key or provided_key not in valid_keys:
        logger.warning(
            "admin_auth.failed",
            extra={
                "reason": "invalid_api_key" if provided_key else "missing_api_key",
                "api_key_hash": hash_identifier(provided_key) if provided_key else None,
            },
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing admin API key",
        )


async def verify_admin_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    """FastAPI dependency guarding admin endpoints.

    Usage:
        @router.get("/admin/...", dependencies=[Depends(verify_admin_api_key)])

    Raises:
        AuthenticationAppError: 403 Forbidden if authentication fails.
    """
    validate_admin_api_key(x_api_key)


async def require_subject_id(request: Request) -> str:
    """FastAPI dependency returning the authenticated subject id.

    The header name is configurable (APP_SUBJECT_HEADER).

    Raises:
        UnauthenticatedAppError: 401 if the header is missing or blank.
    """
    subject_id = (request.headers.get(settings.app.subject_header) or "").strip()
    if not subject_id:
        logger.info(
            "auth.missing_subject",
            extra={"header": settings.app.subject_header},
        )
        raise UnauthenticatedAppError(
            code="unauthenticated",
            message=f"Missing subject id. Provide the {settings.app.subject_header} header.",
        )
    return subject_id
