"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional; each error type fills the subset it needs.
    """

    code: str
    message: str
    hint: str
    action: str
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_at: int
    subject_kind: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class AuthenticationAppError(AppError):
    """Raised when admin authentication/authorization fails."""


class UnauthenticatedAppError(AppError):
    """Raised when a user-scoped check is made without a subject id."""


class RateLimitedAppError(AppError):
    """Raised when a subject has exhausted its quota for an action."""

    @property
    def retry_after_seconds(self) -> int:
        return int((self.details or {}).get("retry_after_seconds", 0))


class PolicyNotFoundAppError(AppError):
    """Raised when an action has no entry in the policy table.

    This is a programming error: masking it would silently disable rate
    limiting for the action, so it is never converted into a verdict.
    """


class CounterStoreAppError(AppError):
    """Raised by counter store adapters when a transaction cannot complete."""
