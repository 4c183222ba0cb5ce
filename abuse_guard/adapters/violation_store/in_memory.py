"""In-memory append-only violation store.

Per-process only; records are lost on restart. Thread-safe: uses a lock
around the shared list so it can also be fed from worker threads. Memory is
bounded only by ``purge_created_before``; call it periodically.
"""

from __future__ import annotations

import logging
import threading

from abuse_guard.adapters.counter_store.base import SubjectKind
from abuse_guard.adapters.violation_store.base import AbstractViolationStore, Violation

logger = logging.getLogger(__name__)


class InMemoryViolationStore(AbstractViolationStore):
    def __init__(self) -> None:
        self._records: list[Violation] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    async def add(self, violation: Violation) -> None:
        with self._lock:
            self._records.append(violation)

    def _newest_first(self) -> list[Violation]:
        # reversed() first so equal timestamps keep latest-inserted first
        with self._lock:
            records = list(reversed(self._records))
        return sorted(records, key=lambda v: v.created_at_ms, reverse=True)

    async def list_for_subject(
        self,
        subject_id: str,
        *,
        limit: int,
        subject_kind: SubjectKind = SubjectKind.USER,
    ) -> list[Violation]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        matches = [
            v
            for v in self._newest_first()
            if v.subject_id == subject_id and v.subject_kind is subject_kind
        ]
        return matches[:limit]

    async def list_since(self, since_ms: int, *, limit: int) -> list[Violation]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        matches = [v for v in self._newest_first() if v.created_at_ms >= since_ms]
        return matches[:limit]

    async def purge_created_before(self, cutoff_ms: int) -> int:
        with self._lock:
            kept = [v for v in self._records if v.created_at_ms >= cutoff_ms]
            purged = len(self._records) - len(kept)
            self._records = kept
        if purged:
            logger.info("violation_store.purged", extra={"purged": purged})
        return purged
