"""Fixed-window rate limit evaluation.

The evaluator turns (subject, action, now) into an allow/deny verdict:

1. Resolve the action's policy (unknown actions are a loud programming error).
2. Compute the fixed window containing ``now``.
3. In one counter-store transaction scoped to (kind, subject, action, window):
   create the counter at 1, deny without incrementing once the threshold is
   reached, or increment.
4. Hand denials to the violation recorder in a background task.
5. Fail open when the counter store errors: availability over enforcement.

User-scoped checks deny at ``burst_allowance`` when the policy defines one;
identifier-scoped (global) checks always deny at ``max_requests``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from abuse_guard.adapters.counter_store.base import (
    AbstractCounterStore,
    Counter,
    CounterKey,
    SubjectKind,
)
from abuse_guard.core.errors import UnauthenticatedAppError, ValidationAppError
from abuse_guard.core.logging import hash_identifier
from abuse_guard.core.policies import Action, PolicyTable, RateLimitPolicy
from abuse_guard.services.violation_recorder import ViolationRecorder
from abuse_guard.services.window_clock import Window, now_ms, window_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Count that triggers denial in this window.
        remaining: Requests still allowed in the current window (0 when denied).
        reset_at: Epoch milliseconds when the current window ends.
        retry_after_seconds: Seconds to wait before retrying (denials only).
        fail_open: True when the verdict was produced without the counter store.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None = None
    fail_open: bool = False


@dataclass(frozen=True)
class _Denial:
    count: int
    window: Window


class RateLimitEvaluator:
    """Evaluates user-scoped and identifier-scoped rate limits."""

    def __init__(
        self,
        *,
        policies: PolicyTable,
        store: AbstractCounterStore,
        recorder: ViolationRecorder | None = None,
        clock: Callable[[], int] = now_ms,
        fail_open_remaining: int = 1000,
        fail_open_reset_seconds: int = 3600,
    ) -> None:
        """Initialize the evaluator.

        Args:
            policies: Immutable action -> policy table.
            store: Counter store providing per-key transactions.
            recorder: Violation recorder invoked for every denial.
            clock: Time source returning epoch milliseconds.
            fail_open_remaining: ``remaining`` reported on the fail-open path.
            fail_open_reset_seconds: Seconds until ``reset_at`` on the fail-open path.
        """
        self._policies = policies
        self._store = store
        self._recorder = recorder
        self._clock = clock
        self._fail_open_remaining = fail_open_remaining
        self._fail_open_reset_ms = fail_open_reset_seconds * 1000
        self._pending: set[asyncio.Task] = set()

    @property
    def policies(self) -> PolicyTable:
        return self._policies

    async def check_rate_limit(
        self,
        subject_id: str,
        action: Action | str,
        *,
        now: int | None = None,
    ) -> RateLimitResult:
        """Check and consume the user-scoped limit for ``subject_id``.

        Args:
            subject_id: Authenticated user id.
            action: Action being attempted.
            now: Evaluation time in epoch ms (defaults to the clock).

        Raises:
            UnauthenticatedAppError: If subject_id is empty.
            PolicyNotFoundAppError: If the action has no policy.
        """
        if not subject_id:
            raise UnauthenticatedAppError(
                code="unauthenticated",
                message="A subject id is required for user-scoped rate limits",
            )
        policy = self._policies.get(action)
        return await self._evaluate(SubjectKind.USER, subject_id, policy, policy.max_allowed, now)

    async def check_global_rate_limit(
        self,
        identifier: str,
        action: Action | str,
        *,
        now: int | None = None,
    ) -> RateLimitResult:
        """Check and consume the identifier-scoped limit (IP, device id).

        Burst allowance never applies here: the ceiling is ``max_requests``.

        Raises:
            ValidationAppError: If identifier is empty.
            PolicyNotFoundAppError: If the action has no policy.
        """
        if not identifier:
            raise ValidationAppError(
                code="missing_identifier",
                message="An identifier is required for global rate limits",
            )
        policy = self._policies.get(action)
        return await self._evaluate(SubjectKind.GLOBAL, identifier, policy, policy.max_requests, now)

    async def _evaluate(
        self,
        kind: SubjectKind,
        subject_id: str,
        policy: RateLimitPolicy,
        max_allowed: int,
        now: int | None,
    ) -> RateLimitResult:
        now = self._clock() if now is None else now
        window = window_for(now, policy.window_seconds)
        key = CounterKey(
            subject_kind=kind,
            subject_id=subject_id,
            action=policy.action.value,
            window_id=window.window_id,
        )

        try:
            result, denial = await self._consume(key, window, max_allowed, now)
        except Exception as exc:  # noqa: BLE001
            return self._fail_open(key, max_allowed, now, exc)

        if denial is not None:
            self._schedule_violation(key, denial)
        else:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "action": key.action,
                    "subject_kind": kind.value,
                    "limit": result.limit,
                    "remaining": result.remaining,
                },
            )
        return result

    async def _consume(
        self,
        key: CounterKey,
        window: Window,
        max_allowed: int,
        now: int,
    ) -> tuple[RateLimitResult, _Denial | None]:
        async with self._store.transaction(key) as txn:
            counter = await txn.read()

            if counter is None:
                await txn.create(
                    Counter(
                        key=key,
                        count=1,
                        window_start_ms=window.start_ms,
                        window_end_ms=window.end_ms,
                        last_request_at_ms=now,
                    )
                )
                return RateLimitResult(
                    allowed=True,
                    limit=max_allowed,
                    remaining=max_allowed - 1,
                    reset_at=window.end_ms,
                ), None

            if counter.count >= max_allowed:
                result = RateLimitResult(
                    allowed=False,
                    limit=max_allowed,
                    remaining=0,
                    reset_at=window.end_ms,
                    retry_after_seconds=window.retry_after_seconds(now),
                )
                return result, _Denial(count=counter.count, window=window)

            await txn.increment_count(1, at_ms=now)
            return RateLimitResult(
                allowed=True,
                limit=max_allowed,
                remaining=max_allowed - counter.count - 1,
                reset_at=window.end_ms,
            ), None

    def _fail_open(
        self,
        key: CounterKey,
        max_allowed: int,
        now: int,
        exc: Exception,
    ) -> RateLimitResult:
        logger.error(
            "rate_limit.fail_open",
            extra={
                "action": key.action,
                "subject_kind": key.subject_kind.value,
                "subject_hash": hash_identifier(key.subject_id),
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return RateLimitResult(
            allowed=True,
            limit=max_allowed,
            remaining=self._fail_open_remaining,
            reset_at=now + self._fail_open_reset_ms,
            fail_open=True,
        )

    def _schedule_violation(self, key: CounterKey, denial: _Denial) -> None:
        if self._recorder is None:
            return
        task = asyncio.create_task(
            self._recorder.record(
                key.subject_id,
                key.action,
                denial.count,
                window_start_ms=denial.window.start_ms,
                subject_kind=key.subject_kind,
            )
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_for_pending(self) -> None:
        """Wait until every scheduled violation recording has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
