"""Best-effort bookkeeping for denied requests.

Recording a violation is telemetry, never part of the verdict: every failure
here is logged and swallowed.
"""

from __future__ import annotations

import logging
from typing import Callable

from abuse_guard.adapters.counter_store.base import SubjectKind
from abuse_guard.adapters.violation_store.base import AbstractViolationStore, Violation
from abuse_guard.core.audit import AuditCategory, AuditLevel, SecurityAuditLogger
from abuse_guard.core.logging import hash_identifier
from abuse_guard.services.window_clock import now_ms

logger = logging.getLogger(__name__)


class ViolationRecorder:
    """Persists one Violation and emits one security audit event per denial."""

    def __init__(
        self,
        store: AbstractViolationStore,
        *,
        audit: SecurityAuditLogger | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._audit = audit or SecurityAuditLogger()
        self._clock = clock

    async def record(
        self,
        subject_id: str,
        action: str,
        count_at_violation: int,
        *,
        window_start_ms: int,
        subject_kind: SubjectKind = SubjectKind.USER,
    ) -> Violation | None:
        """Record a denied request.

        Args:
            subject_id: Denied user id or anonymous identifier.
            action: Action that was denied.
            count_at_violation: Counter value when the denial happened.
            window_start_ms: Start of the window the denial belongs to.
            subject_kind: USER or GLOBAL namespace of ``subject_id``.

        Returns:
            The stored Violation, or None when it could not be stored.
        """

        violation: Violation | None = None
        try:
            violation = Violation(
                subject_id=subject_id,
                action=action,
                count_at_violation=count_at_violation,
                window_start_ms=window_start_ms,
                created_at_ms=self._clock(),
                subject_kind=subject_kind,
            )
            await self._store.add(violation)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "violation.record_failed",
                extra={
                    "action": action,
                    "subject_kind": subject_kind.value,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            violation = None

        if subject_kind is SubjectKind.GLOBAL:
            subject_fields = {"subject_hash": hash_identifier(subject_id)}
        else:
            subject_fields = {"subject_id": subject_id}

        self._audit.log(
            AuditLevel.WARN,
            AuditCategory.SECURITY,
            "check_rate_limit",
            "rate_limit.violation",
            {
                **subject_fields,
                "subject_kind": subject_kind.value,
                "action": action,
                "count_at_violation": count_at_violation,
                "window_start_ms": window_start_ms,
                "recorded": violation is not None,
            },
        )
        return violation
