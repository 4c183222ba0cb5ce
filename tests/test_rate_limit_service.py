"""Unit tests for the rate limit evaluator."""

import asyncio
import logging
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest

from abuse_guard.adapters.counter_store.base import AbstractCounterStore, CounterKey, SubjectKind
from abuse_guard.adapters.counter_store.in_memory import InMemoryCounterStore
from abuse_guard.adapters.violation_store.in_memory import InMemoryViolationStore
from abuse_guard.core.errors import PolicyNotFoundAppError, UnauthenticatedAppError, ValidationAppError
from abuse_guard.core.policies import Action, PolicyTable, RateLimitPolicy, build_default_policy_table
from abuse_guard.services.rate_limit_service import RateLimitEvaluator
from abuse_guard.services.violation_recorder import ViolationRecorder
from abuse_guard.services.window_clock import window_for


class SlowCounterStore(InMemoryCounterStore):
    """Counter store that yields to the loop inside every transaction."""

    @asynccontextmanager
    async def transaction(self, key):
        async with super().transaction(key) as txn:
            await asyncio.sleep(0.001)
            yield txn


class FailingCounterStore(AbstractCounterStore):
    """Counter store that is always unavailable."""

    def __init__(self) -> None:
        self.calls = 0

    @asynccontextmanager
    async def transaction(self, key):
        self.calls += 1
        raise ConnectionError("counter backend unreachable")
        yield  # pragma: no cover

    async def count_counters(self) -> int:
        return 0

    async def purge_ended_before(self, cutoff_ms: int) -> int:
        return 0


def _evaluator(clock, *, store=None, policies=None, violations=None) -> RateLimitEvaluator:
    recorder = None
    if violations is not None:
        recorder = ViolationRecorder(violations, clock=clock)
    return RateLimitEvaluator(
        policies=policies or build_default_policy_table(),
        store=store if store is not None else InMemoryCounterStore(),
        recorder=recorder,
        clock=clock,
    )


def _table(max_requests: int, window_seconds: int = 60, burst: int | None = None) -> PolicyTable:
    return PolicyTable([RateLimitPolicy(Action.LOGIN, max_requests, window_seconds, burst)])


@pytest.mark.asyncio
async def test_remaining_decreases_by_one_until_zero(clock) -> None:
    evaluator = _evaluator(clock)

    remaining = [(await evaluator.check_rate_limit("u1", Action.PROFILE_UPDATE)).remaining for _ in range(10)]

    assert remaining == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]


@pytest.mark.asyncio
async def test_threshold_is_exact(clock) -> None:
    evaluator = _evaluator(clock, policies=_table(5))

    results = [await evaluator.check_rate_limit("u1", Action.LOGIN) for _ in range(6)]

    assert all(r.allowed for r in results[:5])
    assert results[4].remaining == 0
    assert results[5].allowed is False
    assert results[5].remaining == 0


@pytest.mark.asyncio
async def test_denied_request_does_not_increment(clock) -> None:
    store = InMemoryCounterStore()
    evaluator = _evaluator(clock, store=store, policies=_table(2))

    for _ in range(5):
        await evaluator.check_rate_limit("u1", Action.LOGIN)

    window = window_for(clock(), 60)
    key = CounterKey(SubjectKind.USER, "u1", "LOGIN", window.window_id)
    counter = await store.get(key)
    assert counter is not None
    assert counter.count == 2


@pytest.mark.asyncio
async def test_burst_allowance_raises_user_ceiling(clock) -> None:
    evaluator = _evaluator(clock)

    results = [await evaluator.check_rate_limit("u1", Action.MESSAGE_SEND) for _ in range(121)]

    assert all(r.allowed for r in results[:120])
    assert results[100].allowed is True  # call 101
    assert results[119].remaining == 0
    assert results[120].allowed is False
    assert results[0].limit == 120


@pytest.mark.asyncio
async def test_global_checks_ignore_burst_allowance(clock) -> None:
    evaluator = _evaluator(clock)

    results = [await evaluator.check_global_rate_limit("10.0.0.1", Action.MESSAGE_SEND) for _ in range(101)]

    assert all(r.allowed for r in results[:100])
    assert results[99].remaining == 0
    assert results[100].allowed is False
    assert results[0].limit == 100


@pytest.mark.asyncio
async def test_denial_reports_reset_and_retry_after(clock) -> None:
    evaluator = _evaluator(clock, policies=_table(1, window_seconds=60))
    window = window_for(clock(), 60)

    await evaluator.check_rate_limit("u1", Action.LOGIN)
    denied = await evaluator.check_rate_limit("u1", Action.LOGIN)

    assert denied.reset_at == window.end_ms
    assert denied.retry_after_seconds == window.retry_after_seconds(clock())
    assert 1 <= denied.retry_after_seconds <= 60


@pytest.mark.asyncio
async def test_new_window_starts_fresh(clock) -> None:
    evaluator = _evaluator(clock, policies=_table(1, window_seconds=60))

    assert (await evaluator.check_rate_limit("u1", Action.LOGIN)).allowed is True
    assert (await evaluator.check_rate_limit("u1", Action.LOGIN)).allowed is False

    clock.advance(60)
    fresh = await evaluator.check_rate_limit("u1", Action.LOGIN)
    assert fresh.allowed is True
    assert fresh.remaining == 0


@pytest.mark.asyncio
async def test_explicit_now_selects_window(clock) -> None:
    evaluator = _evaluator(clock, policies=_table(1, window_seconds=60))
    start = window_for(clock(), 60).start_ms

    assert (await evaluator.check_rate_limit("u1", Action.LOGIN, now=start + 59_999)).allowed is True
    assert (await evaluator.check_rate_limit("u1", Action.LOGIN, now=start + 60_000)).allowed is True
    assert (await evaluator.check_rate_limit("u1", Action.LOGIN, now=start + 60_001)).allowed is False


@pytest.mark.asyncio
async def test_user_and_global_keys_are_isolated(clock) -> None:
    evaluator = _evaluator(clock, policies=_table(1))

    assert (await evaluator.check_rate_limit("1.2.3.4", Action.LOGIN)).allowed is True
    assert (await evaluator.check_global_rate_limit("1.2.3.4", Action.LOGIN)).allowed is True
    assert (await evaluator.check_rate_limit("global_1.2.3.4", Action.LOGIN)).allowed is True


@pytest.mark.asyncio
async def test_subjects_and_actions_are_isolated(clock) -> None:
    evaluator = _evaluator(clock)

    for _ in range(10):
        await evaluator.check_rate_limit("u1", Action.LOGIN)

    assert (await evaluator.check_rate_limit("u1", Action.LOGIN)).allowed is False
    assert (await evaluator.check_rate_limit("u2", Action.LOGIN)).allowed is True
    assert (await evaluator.check_rate_limit("u1", Action.PROFILE_UPDATE)).allowed is True


@pytest.mark.asyncio
async def test_fail_open_when_store_raises(clock, caplog) -> None:
    store = FailingCounterStore()
    evaluator = _evaluator(clock, store=store)

    with caplog.at_level(logging.ERROR, logger="abuse_guard.services.rate_limit_service"):
        results = [await evaluator.check_rate_limit("u1", Action.LOGIN) for _ in range(20)]

    assert store.calls == 20
    assert all(r.allowed and r.fail_open for r in results)
    assert results[0].remaining == 1000
    assert results[0].reset_at == clock() + 3600 * 1000
    assert "rate_limit.fail_open" in caplog.messages


@pytest.mark.asyncio
async def test_fail_open_when_store_times_out(clock) -> None:
    store = InMemoryCounterStore(timeout_seconds=0.05)
    evaluator = _evaluator(clock, store=store, policies=_table(1))
    window = window_for(clock(), 60)
    key = CounterKey(SubjectKind.USER, "u1", "LOGIN", window.window_id)
    held = asyncio.Event()
    release = asyncio.Event()

    async def hold() -> None:
        async with store.transaction(key):
            held.set()
            await release.wait()

    holder = asyncio.create_task(hold())
    await held.wait()

    result = await evaluator.check_rate_limit("u1", Action.LOGIN)

    release.set()
    await holder
    assert result.allowed is True
    assert result.fail_open is True


@pytest.mark.asyncio
async def test_concurrent_requests_never_over_admit(clock) -> None:
    violations = InMemoryViolationStore()
    evaluator = _evaluator(clock, store=SlowCounterStore(), policies=_table(10), violations=violations)

    results = await asyncio.gather(*(evaluator.check_rate_limit("u1", Action.LOGIN) for _ in range(50)))
    await evaluator.wait_for_pending()

    allowed = [r for r in results if r.allowed]
    assert len(allowed) == 10
    assert sorted(r.remaining for r in allowed) == list(range(10))
    assert len(violations) == 40


@pytest.mark.asyncio
async def test_concurrent_global_requests_never_over_admit(clock) -> None:
    evaluator = _evaluator(clock, store=SlowCounterStore(), policies=_table(10, burst=15))

    results = await asyncio.gather(
        *(evaluator.check_global_rate_limit("10.0.0.9", Action.LOGIN) for _ in range(30))
    )

    assert sum(r.allowed for r in results) == 10


@pytest.mark.asyncio
async def test_login_scenario_records_violation(clock) -> None:
    violations = InMemoryViolationStore()
    evaluator = _evaluator(clock, violations=violations)
    window = window_for(clock(), 300)

    results = [await evaluator.check_rate_limit("u1", Action.LOGIN) for _ in range(11)]
    await evaluator.wait_for_pending()

    assert [r.remaining for r in results[:10]] == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]
    assert all(r.allowed for r in results[:10])
    denied = results[10]
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.retry_after_seconds == window.retry_after_seconds(clock())

    recorded = await violations.list_for_subject("u1", limit=10)
    assert len(recorded) == 1
    assert recorded[0].action == "LOGIN"
    assert recorded[0].count_at_violation == 10
    assert recorded[0].window_start_ms == window.start_ms


@pytest.mark.asyncio
async def test_global_denial_recorded_under_global_kind(clock) -> None:
    violations = InMemoryViolationStore()
    evaluator = _evaluator(clock, policies=_table(1), violations=violations)

    await evaluator.check_global_rate_limit("10.0.0.1", Action.LOGIN)
    await evaluator.check_global_rate_limit("10.0.0.1", Action.LOGIN)
    await evaluator.wait_for_pending()

    assert await violations.list_for_subject("10.0.0.1", limit=5) == []
    recorded = await violations.list_for_subject("10.0.0.1", limit=5, subject_kind=SubjectKind.GLOBAL)
    assert len(recorded) == 1


@pytest.mark.asyncio
async def test_unknown_action_raises(clock) -> None:
    evaluator = _evaluator(clock, store=FailingCounterStore())

    with pytest.raises(PolicyNotFoundAppError):
        await evaluator.check_rate_limit("u1", "TELEPORT")


@pytest.mark.asyncio
async def test_missing_subject_raises(clock) -> None:
    evaluator = _evaluator(clock)

    with pytest.raises(UnauthenticatedAppError):
        await evaluator.check_rate_limit("", Action.LOGIN)

    with pytest.raises(ValidationAppError):
        await evaluator.check_global_rate_limit("", Action.LOGIN)


@pytest.mark.asyncio
async def test_denial_stands_when_violation_recording_fails(clock) -> None:
    violations = InMemoryViolationStore()
    violations.add = AsyncMock(side_effect=ConnectionError("violation store down"))
    evaluator = _evaluator(clock, policies=_table(1), violations=violations)

    await evaluator.check_rate_limit("u1", Action.LOGIN)
    denied = await evaluator.check_rate_limit("u1", Action.LOGIN)
    await evaluator.wait_for_pending()

    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.fail_open is False
    assert denied.retry_after_seconds == window_for(clock(), 60).retry_after_seconds(clock())
    violations.add.assert_awaited_once()
    assert len(violations) == 0
