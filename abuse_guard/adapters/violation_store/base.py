"""Violation store interfaces.

Violations are append-only: records are inserted once and never updated,
so concurrent writers only ever race on independent inserts. Retention is
the only deletion path.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from abuse_guard.adapters.counter_store.base import SubjectKind


def _new_violation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Violation:
    """Persisted record of one denied request.

    Attributes:
        subject_id: User id or anonymous identifier that was denied.
        action: Action name that was denied.
        count_at_violation: Counter value observed when the request was denied.
        window_start_ms: Start of the window the denial happened in.
        created_at_ms: Time the violation was recorded (epoch ms).
        subject_kind: USER for authenticated subjects, GLOBAL for identifiers.
        violation_id: Generated unique id.
    """

    subject_id: str
    action: str
    count_at_violation: int
    window_start_ms: int
    created_at_ms: int
    subject_kind: SubjectKind = SubjectKind.USER
    violation_id: str = field(default_factory=_new_violation_id)


class AbstractViolationStore(ABC):
    """Interface for violation stores."""

    @abstractmethod
    async def add(self, violation: Violation) -> None:
        """Insert one violation record."""
        raise NotImplementedError

    @abstractmethod
    async def list_for_subject(
        self,
        subject_id: str,
        *,
        limit: int,
        subject_kind: SubjectKind = SubjectKind.USER,
    ) -> list[Violation]:
        """Return a subject's violations, most recent first, capped at ``limit``."""
        raise NotImplementedError

    @abstractmethod
    async def list_since(self, since_ms: int, *, limit: int) -> list[Violation]:
        """Return violations created at or after ``since_ms``, most recent first.

        Args:
            since_ms: Lower bound on created_at_ms (epoch ms, inclusive).
            limit: Maximum number of records returned.
        """
        raise NotImplementedError

    @abstractmethod
    async def purge_created_before(self, cutoff_ms: int) -> int:
        """Delete violations created before ``cutoff_ms``; return how many."""
        raise NotImplementedError
