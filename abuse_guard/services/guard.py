"""Rate limit guard around business handlers.

A denied check short-circuits before the handler runs; an allowed check runs
the handler and returns (or raises) exactly what it does.
"""

from __future__ import annotations

import functools
import inspect
from typing import Any, Awaitable, Callable, TypeVar

from abuse_guard.core.errors import RateLimitedAppError, UnauthenticatedAppError
from abuse_guard.core.policies import Action
from abuse_guard.services.rate_limit_service import RateLimitEvaluator, RateLimitResult

T = TypeVar("T")

Handler = Callable[[], "T | Awaitable[T]"]


def build_rate_limited_error(action: Action | str, result: RateLimitResult) -> RateLimitedAppError:
    """Build the client-facing error for a denied verdict."""
    name = action.value if isinstance(action, Action) else str(action)
    retry_after = result.retry_after_seconds
    if retry_after is None:
        retry_after = 0
    return RateLimitedAppError(
        code="rate_limited",
        message=f"Rate limit exceeded for {name}. Retry in {retry_after}s.",
        details={
            "action": name,
            "limit": result.limit,
            "remaining": result.remaining,
            "retry_after_seconds": retry_after,
            "reset_at": result.reset_at,
        },
    )


class RateLimitGuard:
    """Composes the evaluator with a caller's handler."""

    def __init__(self, evaluator: RateLimitEvaluator) -> None:
        self._evaluator = evaluator

    async def enforce(self, subject_id: str | None, action: Action | str, handler: Handler) -> Any:
        """Run ``handler`` only if ``subject_id`` is within its limit for ``action``.

        Args:
            subject_id: Authenticated user id.
            action: Action being attempted.
            handler: Zero-argument callable (sync or async) doing the work.

        Returns:
            Whatever ``handler`` returns.

        Raises:
            UnauthenticatedAppError: If subject_id is missing.
            RateLimitedAppError: If the subject is over its limit; the handler
                is not called.
        """
        if not subject_id:
            raise UnauthenticatedAppError(
                code="unauthenticated",
                message="Authentication is required for this action",
            )

        result = await self._evaluator.check_rate_limit(subject_id, action)
        if not result.allowed:
            raise build_rate_limited_error(action, result)

        outcome = handler()
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def limit(self, action: Action | str) -> Callable[[Callable[..., Any]], Callable[..., Awaitable[Any]]]:
        """Decorate a handler whose first argument is the subject id.

        Example:
            >>> @guard.limit(Action.MESSAGE_SEND)
            ... async def send_message(user_id, chat_id, body): ...
        """

        def decorator(func: Callable[..., Any]) -> Callable[..., Awaitable[Any]]:
            @functools.wraps(func)
            async def wrapper(subject_id: str, *args: Any, **kwargs: Any) -> Any:
                return await self.enforce(
                    subject_id,
                    action,
                    functools.partial(func, subject_id, *args, **kwargs),
                )

            return wrapper

        return decorator
