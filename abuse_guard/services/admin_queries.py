"""Read-only operational queries over violation records.

Aggregations scan at most ``scan_cap`` raw records from the trailing window
before counting. This is a known scalability bound: with more violations
than the cap, results describe only the most recent ones. Larger deployments
should maintain a pre-aggregated counter per subject instead.
"""

from __future__ import annotations

from collections import Counter as Tally
from dataclasses import dataclass, field
from typing import Callable

from abuse_guard.adapters.counter_store.base import SubjectKind
from abuse_guard.adapters.violation_store.base import AbstractViolationStore, Violation
from abuse_guard.core.errors import ValidationAppError
from abuse_guard.services.window_clock import now_ms

DEFAULT_VIOLATION_LIMIT = 50
DEFAULT_TOP_OFFENDERS_LIMIT = 20


@dataclass(frozen=True)
class OffenderSummary:
    subject_id: str
    subject_kind: SubjectKind
    violation_count: int


@dataclass(frozen=True)
class ViolationStats:
    """Violation totals over the trailing window.

    Attributes:
        window_hours: Length of the trailing window.
        total: Violations counted (bounded by the scan cap).
        by_action: Violations per action name.
        truncated: True when the scan cap was reached.
    """

    window_hours: int
    total: int
    by_action: dict[str, int] = field(default_factory=dict)
    truncated: bool = False


def _require_positive(limit: int) -> None:
    if limit < 1:
        raise ValidationAppError(
            code="invalid_limit",
            message="limit must be >= 1",
            details={"hint": "Pass a positive limit"},
        )


class AdminQueryService:
    """Per-subject history, top offenders and abuse statistics."""

    def __init__(
        self,
        store: AbstractViolationStore,
        *,
        clock: Callable[[], int] = now_ms,
        window_hours: int = 24,
        scan_cap: int = 1000,
        violation_limit: int = DEFAULT_VIOLATION_LIMIT,
        top_offenders_limit: int = DEFAULT_TOP_OFFENDERS_LIMIT,
    ) -> None:
        self._store = store
        self._violation_limit = violation_limit
        self._top_offenders_limit = top_offenders_limit
        self._clock = clock
        self._window_hours = window_hours
        self._scan_cap = scan_cap

    async def _recent(self) -> list[Violation]:
        since = self._clock() - self._window_hours * 3600 * 1000
        return await self._store.list_since(since, limit=self._scan_cap)

    async def get_user_violations(
        self,
        subject_id: str,
        limit: int | None = None,
    ) -> list[Violation]:
        """Return a user's violations, most recent first, capped at ``limit``."""
        if limit is None:
            limit = self._violation_limit
        _require_positive(limit)
        return await self._store.list_for_subject(subject_id, limit=limit)

    async def get_top_offenders(self, limit: int | None = None) -> list[OffenderSummary]:
        """Return subjects with the most violations over the trailing window.

        Sorted by violation count descending; ties broken by subject id then
        subject kind so the order is deterministic.
        """
        if limit is None:
            limit = self._top_offenders_limit
        _require_positive(limit)
        tally = Tally((v.subject_kind, v.subject_id) for v in await self._recent())
        ranked = sorted(
            tally.items(),
            key=lambda item: (-item[1], item[0][1], item[0][0].value),
        )
        return [
            OffenderSummary(subject_id=subject_id, subject_kind=kind, violation_count=count)
            for (kind, subject_id), count in ranked[:limit]
        ]

    async def get_violation_stats(self) -> ViolationStats:
        """Return violation totals per action over the trailing window."""
        recent = await self._recent()
        by_action = Tally(v.action for v in recent)
        return ViolationStats(
            window_hours=self._window_hours,
            total=len(recent),
            by_action=dict(sorted(by_action.items())),
            truncated=len(recent) >= self._scan_cap,
        )
