"""Security audit logging.

Audit events go to a dedicated ``abuse_guard.audit`` logger so operators can
route them separately (SIEM, retention) from service logs. Emitting an audit
event is fire-and-forget: callers never see an exception from here.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

AUDIT_LOGGER_NAME = "abuse_guard.audit"

_fallback_logger = logging.getLogger(__name__)


class AuditLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditCategory(str, Enum):
    SECURITY = "SECURITY"
    SERVICE = "SERVICE"


_LEVELS = {
    AuditLevel.DEBUG: logging.DEBUG,
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARN: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
}


class SecurityAuditLogger:
    """Structured audit logger for security-relevant events.

    Each call produces one record whose ``extra`` carries ``category``,
    ``function_name`` and the caller supplied ``context`` mapping.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        level: AuditLevel,
        category: AuditCategory,
        function_name: str,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Emit one audit event.

        Args:
            level: Severity of the event.
            category: Event family (SECURITY for abuse signals).
            function_name: Operation that produced the event.
            message: Short dotted event name.
            context: Structured, non-sensitive fields for the event.
        """

        try:
            self._logger.log(
                _LEVELS[AuditLevel(level)],
                message,
                extra={
                    "audit": True,
                    "category": AuditCategory(category).value,
                    "function_name": function_name,
                    "context": dict(context or {}),
                },
            )
        except Exception as exc:  # noqa: BLE001 - audit must never raise
            _fallback_logger.error(
                "audit.emit_failed",
                extra={"error_type": type(exc).__name__, "function_name": function_name},
            )
