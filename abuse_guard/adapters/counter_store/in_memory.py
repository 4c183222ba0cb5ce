"""In-memory counter store with one asyncio lock per counter key.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Locks are created on first use of a key and dropped when the last waiter
  leaves, so idle keys hold no lock objects.
- Writes are staged on the transaction and applied on clean exit; an
  exception or cancellation inside the transaction discards them.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator

from abuse_guard.adapters.counter_store.base import (
    AbstractCounterStore,
    Counter,
    CounterKey,
    CounterTransaction,
)
from abuse_guard.core.errors import CounterStoreAppError

logger = logging.getLogger(__name__)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class _InMemoryTransaction(CounterTransaction):
    def __init__(self, key: CounterKey, current: Counter | None) -> None:
        self._key = key
        self._counter = replace(current) if current is not None else None
        self.dirty = False

    async def read(self) -> Counter | None:
        if self._counter is None:
            return None
        return replace(self._counter)

    async def create(self, counter: Counter) -> None:
        if counter.key != self._key:
            raise ValueError("counter key does not match transaction key")
        if self._counter is not None:
            raise CounterStoreAppError(
                code="counter_exists",
                message="Counter already exists for this key",
            )
        self._counter = replace(counter)
        self.dirty = True

    async def increment_count(self, by: int, *, at_ms: int) -> None:
        if by < 1:
            raise ValueError("by must be >= 1")
        if self._counter is None:
            raise CounterStoreAppError(
                code="counter_missing",
                message="Cannot increment a counter that does not exist",
            )
        self._counter.count += by
        self._counter.last_request_at_ms = at_ms
        self.dirty = True

    def snapshot(self) -> Counter:
        if self._counter is None:
            raise CounterStoreAppError(
                code="counter_missing",
                message="Nothing to commit for this key",
            )
        return replace(self._counter)


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store holding state in a dict, serialized per key.

    Important:
        Locks belong to the running event loop; use one store per loop.
    """

    def __init__(self, *, timeout_seconds: float = 2.0) -> None:
        """Initialize the store.

        Args:
            timeout_seconds: Maximum wait for a key's lock before the
                transaction fails with CounterStoreAppError.

        Raises:
            ValueError: If timeout_seconds is not positive.
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._timeout = timeout_seconds
        self._counters: dict[CounterKey, Counter] = {}
        self._locks: dict[CounterKey, _KeyLock] = {}

    async def _acquire(self, entry: _KeyLock, key: CounterKey) -> None:
        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "counter_store.lock_timeout",
                extra={"action": key.action, "timeout_s": self._timeout},
            )
            raise CounterStoreAppError(
                code="counter_store_timeout",
                message="Timed out waiting for counter transaction",
            ) from exc

    @asynccontextmanager
    async def transaction(self, key: CounterKey) -> AsyncIterator[CounterTransaction]:
        entry = self._locks.get(key)
        if entry is None:
            entry = _KeyLock()
            self._locks[key] = entry
        entry.holders += 1
        try:
            await self._acquire(entry, key)
            try:
                txn = _InMemoryTransaction(key, self._counters.get(key))
                yield txn
                if txn.dirty:
                    self._counters[key] = txn.snapshot()
            finally:
                entry.lock.release()
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def get(self, key: CounterKey) -> Counter | None:
        """Return a copy of the committed counter for ``key`` (no locking)."""
        counter = self._counters.get(key)
        return replace(counter) if counter is not None else None

    async def count_counters(self) -> int:
        return len(self._counters)

    async def purge_ended_before(self, cutoff_ms: int) -> int:
        stale = [key for key, counter in self._counters.items() if counter.window_end_ms < cutoff_ms]
        for key in stale:
            self._counters.pop(key, None)
        if stale:
            logger.info("counter_store.purged", extra={"purged": len(stale)})
        return len(stale)
