"""Rate limiting wiring for FastAPI.

This module assembles the engine (policy table, stores, recorder, evaluator,
guard, admin queries) once per application and exposes it to routes through
dependencies.

Design goals:
- Minimal coupling: routes depend on dependency functions only.
- Swap-friendly: stores are built behind abstract interfaces.
- One immutable policy table, built at startup and injected.

Route guards:
- ``rate_limit(action)``: user-scoped, subject id from the subject header.
- ``global_rate_limit(action)``: identifier-scoped, client IP.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Request

from abuse_guard.adapters.counter_store.base import AbstractCounterStore
from abuse_guard.adapters.counter_store.in_memory import InMemoryCounterStore
from abuse_guard.adapters.violation_store.base import AbstractViolationStore
from abuse_guard.adapters.violation_store.in_memory import InMemoryViolationStore
from abuse_guard.core.auth import require_subject_id
from abuse_guard.core.config import LimiterSettings, settings
from abuse_guard.core.policies import Action, PolicyTable, build_default_policy_table
from abuse_guard.services.admin_queries import AdminQueryService
from abuse_guard.services.guard import RateLimitGuard, build_rate_limited_error
from abuse_guard.services.rate_limit_service import RateLimitEvaluator, RateLimitResult
from abuse_guard.services.violation_recorder import ViolationRecorder
from abuse_guard.services.window_clock import now_ms

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEngine:
    """Everything a process needs to evaluate and report on rate limits."""

    policies: PolicyTable
    counter_store: AbstractCounterStore
    violation_store: AbstractViolationStore
    recorder: ViolationRecorder
    evaluator: RateLimitEvaluator
    guard: RateLimitGuard
    admin: AdminQueryService
    limiter_settings: LimiterSettings
    clock: Callable[[], int]

    async def purge_stale_counters(self) -> int:
        """Drop counters whose window ended before the retention horizon."""
        cutoff = self.clock() - self.limiter_settings.counter_retention_seconds * 1000
        return await self.counter_store.purge_ended_before(cutoff)

    async def purge_stale_violations(self) -> int:
        """Drop violation records older than the violation retention."""
        cutoff = self.clock() - self.limiter_settings.violation_retention_seconds * 1000
        return await self.violation_store.purge_created_before(cutoff)

    async def run_periodic_purge(self, interval_seconds: float) -> None:
        """Purge stale counters and violations every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                counters = await self.purge_stale_counters()
                violations = await self.purge_stale_violations()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "rate_limit.purge_failed",
                    extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
                )
                continue
            logger.debug(
                "rate_limit.purged",
                extra={"counters": counters, "violations": violations},
            )


def build_engine(
    limiter_settings: LimiterSettings | None = None,
    *,
    policies: PolicyTable | None = None,
    counter_store: AbstractCounterStore | None = None,
    violation_store: AbstractViolationStore | None = None,
    clock: Callable[[], int] = now_ms,
) -> RateLimitEngine:
    """Build a rate limit engine.

    Args:
        limiter_settings: Engine tuning; defaults to global settings.
        policies: Policy table; defaults to the compiled-in table.
        counter_store: Counter store; defaults to an in-memory store.
        violation_store: Violation store; defaults to an in-memory store.
        clock: Time source returning epoch milliseconds.

    Returns:
        RateLimitEngine with all components wired together.
    """

    cfg = limiter_settings or settings.limiter
    if policies is None:
        policies = build_default_policy_table()
    if counter_store is None:
        counter_store = InMemoryCounterStore(timeout_seconds=cfg.store_timeout_seconds)
    if violation_store is None:
        violation_store = InMemoryViolationStore()

    recorder = ViolationRecorder(violation_store, clock=clock)
    evaluator = RateLimitEvaluator(
        policies=policies,
        store=counter_store,
        recorder=recorder,
        clock=clock,
        fail_open_remaining=cfg.fail_open_remaining,
        fail_open_reset_seconds=cfg.fail_open_reset_seconds,
    )
    admin = AdminQueryService(
        violation_store,
        clock=clock,
        window_hours=cfg.top_offenders_window_hours,
        scan_cap=cfg.top_offenders_scan_cap,
        violation_limit=cfg.violation_history_limit,
        top_offenders_limit=cfg.top_offenders_limit,
    )

    logger.info(
        "rate_limit.engine_built",
        extra={
            "policies": len(policies),
            "counter_store": type(counter_store).__name__,
            "violation_store": type(violation_store).__name__,
        },
    )

    return RateLimitEngine(
        policies=policies,
        counter_store=counter_store,
        violation_store=violation_store,
        recorder=recorder,
        evaluator=evaluator,
        guard=RateLimitGuard(evaluator),
        admin=admin,
        limiter_settings=cfg,
        clock=clock,
    )


def get_engine(request: Request) -> RateLimitEngine:
    """Return the engine attached to the running application."""
    return request.app.state.rate_limit_engine


def get_evaluator(engine: Annotated[RateLimitEngine, Depends(get_engine)]) -> RateLimitEvaluator:
    return engine.evaluator


def get_admin_queries(engine: Annotated[RateLimitEngine, Depends(get_engine)]) -> AdminQueryService:
    return engine.admin


def client_identifier(request: Request) -> str:
    """Resolve the anonymous identifier used for global checks.

    Uses the first X-Forwarded-For hop when the deployment trusts its proxy,
    otherwise the socket peer address.
    """

    if settings.app.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def rate_limit(action: Action) -> Callable[..., Awaitable[RateLimitResult]]:
    """Build a dependency enforcing the user-scoped limit for ``action``.

    Raises RateLimitedAppError (HTTP 429) when denied and
    UnauthenticatedAppError (HTTP 401) when no subject id is supplied.
    """

    async def dependency(
        subject_id: Annotated[str, Depends(require_subject_id)],
        evaluator: Annotated[RateLimitEvaluator, Depends(get_evaluator)],
    ) -> RateLimitResult:
        result = await evaluator.check_rate_limit(subject_id, action)
        if not result.allowed:
            raise build_rate_limited_error(action, result)
        return result

    return dependency


def global_rate_limit(action: Action) -> Callable[..., Awaitable[RateLimitResult]]:
    """Build a dependency enforcing the identifier-scoped limit for ``action``."""

    async def dependency(
        request: Request,
        evaluator: Annotated[RateLimitEvaluator, Depends(get_evaluator)],
    ) -> RateLimitResult:
        result = await evaluator.check_global_rate_limit(client_identifier(request), action)
        if not result.allowed:
            raise build_rate_limited_error(action, result)
        return result

    return dependency
