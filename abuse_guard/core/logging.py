"""Structured logging for limiter, audit and HTTP events.

Every record leaving a handler is one JSON object: the dotted event name as
``message`` plus the ``extra`` fields passed by the caller. Two kinds of
fields are rewritten on the way out:

- secrets (admin API keys, auth headers) become ``[REDACTED]``
- client identifiers (IP addresses, forwarded-for chains, device ids) become
  ``hash_identifier`` digests, so a flood from one source can still be
  followed across records without its address reaching the logs

The request id set by the HTTP middleware is stamped on every record emitted
while the request is in flight.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from abuse_guard.core.config import LogSettings, settings

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

REDACTED = "[REDACTED]"

REDACTED_KEYS: frozenset[str] = frozenset(
    {
        "api_key",
        "x-api-key",
        "app_admin_api_keys",
        "authorization",
        "cookie",
        "set-cookie",
        "password",
        "secret",
        "token",
    }
)

HASHED_KEYS: frozenset[str] = frozenset(
    {
        "ip_address",
        "client_ip",
        "x-forwarded-for",
        "x-real-ip",
        "device_id",
    }
)

# LogRecord attributes that are not caller extras
_RECORD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "taskName", "stack",
    }
)


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def hash_identifier(value: str) -> str:
    """Return the first 16 hex chars of the SHA-256 of ``value``.

    Used wherever a subject id, IP or device id must be correlatable in logs
    without being readable.
    """

    return hashlib.sha256(value.encode()).hexdigest()[:16]


class _Scrubber:
    """Rewrites secret and identifier fields, recursing into mappings and lists."""

    def __init__(
        self,
        redacted_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        self.redacted_keys = {k.lower() for k in (redacted_keys or REDACTED_KEYS)}
        self.hashed_keys = {k.lower() for k in (hashed_keys or HASHED_KEYS)}

    def field(self, key: str, value: Any) -> Any:
        lowered = key.lower()
        if lowered in self.redacted_keys:
            return REDACTED
        if lowered in self.hashed_keys and value is not None:
            return hash_identifier(str(value))
        return self.value(value)

    def value(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: self.field(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.value(v) for v in value)
        return value

    def extras(self, record: LogRecord) -> dict[str, Any]:
        # Records already scrubbed by SensitiveDataFilter are passed through as is
        scrub = not getattr(record, "_scrubbed", False)
        return {
            key: self.field(key, value) if scrub else value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }


class RequestIdFilter(logging.Filter):
    """Stamp the in-flight request id on records that lack one."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrub extras in place so every formatter, plain included, sees safe values."""

    def __init__(
        self,
        redacted_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(redacted_keys, hashed_keys)

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "_scrubbed", False):
            return True
        for key, value in self._scrubber.extras(record).items():
            setattr(record, key, value)
        record._scrubbed = True
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, event, extras."""

    def __init__(
        self,
        *,
        redacted_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
        ensure_ascii: bool = True,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(redacted_keys, hashed_keys)
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id

        payload.update(self._scrubber.extras(record))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    file_path = Path(log_settings.file_path or "logs/abuse_guard.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if not log_settings.max_bytes:
        return logging.FileHandler(file_path, encoding="utf-8")
    return RotatingFileHandler(
        file_path,
        maxBytes=log_settings.max_bytes,
        backupCount=log_settings.backup_count,
        encoding="utf-8",
    )


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Install the scrubbing handler on the root logger.

    Service events and ``abuse_guard.audit`` security events share the
    handler; audit records are told apart by their ``audit: true`` field.

    Args:
        log_settings: Logging settings; the global ``settings.log`` if omitted.
    """

    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())

    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # uvicorn installs its own handlers; keep its records from printing twice
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.access").propagate = False
