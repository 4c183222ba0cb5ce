"""Pydantic schemas for rate limit checks and admin reporting."""

from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, ConfigDict, Field

from abuse_guard.adapters.counter_store.base import SubjectKind
from abuse_guard.core.policies import Action


class RateLimitCheckRequest(BaseModel):
    """User-scoped check; the subject comes from the subject header."""

    action: Action = Field(..., description="Action being attempted.")


class GlobalRateLimitCheckRequest(BaseModel):
    """Identifier-scoped check for pre-authentication endpoints."""

    action: Action = Field(..., description="Action being attempted.")
    identifier: str | None = Field(
        default=None,
        min_length=1,
        max_length=256,
        description="IP address or device id. Defaults to the client IP.",
    )


class RateLimitResultResponse(BaseModel):
    """Verdict for an allowed request."""

    model_config = ConfigDict(from_attributes=True)

    allowed: bool
    limit: int = Field(..., description="Count that triggers denial in this window.")
    remaining: int = Field(..., description="Requests still allowed in this window.")
    reset_at: int = Field(..., description="Window end, epoch milliseconds.")
    retry_after_seconds: int | None = None
    fail_open: bool = Field(
        False,
        description="True when the verdict was produced while the counter store was unavailable.",
    )


class ViolationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    violation_id: str
    subject_id: str
    subject_kind: SubjectKind
    action: str
    count_at_violation: int
    window_start_ms: int
    created_at_ms: int


class TopOffenderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject_id: str
    subject_kind: SubjectKind
    violation_count: int


class ViolationStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    window_hours: int
    total: int
    by_action: Dict[str, int] = Field(default_factory=dict)
    truncated: bool = Field(
        False,
        description="True when the raw scan cap was reached; totals are then a lower bound.",
    )


class PurgeCountersResponse(BaseModel):
    purged: int = Field(..., description="Counters dropped.")
    violations_purged: int = Field(..., description="Violation records dropped.")


class HealthResponse(BaseModel):
    status: str
    counters: int
