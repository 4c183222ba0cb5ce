"""Rate limit check endpoints.

Both endpoints consume one request from the caller's quota. Allowed checks
return the verdict; denied checks fail with 429 ``rate_limited`` carrying
retry metadata.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from abuse_guard.core.auth import require_subject_id
from abuse_guard.core.rate_limit import client_identifier, get_evaluator
from abuse_guard.schemas.rate_limit import (
    GlobalRateLimitCheckRequest,
    RateLimitCheckRequest,
    RateLimitResultResponse,
)
from abuse_guard.services.guard import build_rate_limited_error
from abuse_guard.services.rate_limit_service import RateLimitEvaluator

router = APIRouter(tags=["Rate limits"])


@router.post("/rate-limits/check", response_model=RateLimitResultResponse)
async def check_rate_limit(
    body: RateLimitCheckRequest,
    subject_id: Annotated[str, Depends(require_subject_id)],
    evaluator: Annotated[RateLimitEvaluator, Depends(get_evaluator)],
) -> RateLimitResultResponse:
    """Check and consume the user-scoped limit for the authenticated subject.

    Raises:
        UnauthenticatedAppError: 401 when the subject header is missing.
        RateLimitedAppError: 429 when the subject is over its limit.
    """
    result = await evaluator.check_rate_limit(subject_id, body.action)
    if not result.allowed:
        raise build_rate_limited_error(body.action, result)
    return RateLimitResultResponse.model_validate(result)


@router.post("/rate-limits/check-global", response_model=RateLimitResultResponse)
async def check_global_rate_limit(
    body: GlobalRateLimitCheckRequest,
    request: Request,
    evaluator: Annotated[RateLimitEvaluator, Depends(get_evaluator)],
) -> RateLimitResultResponse:
    """Check and consume the identifier-scoped limit.

    The identifier defaults to the client IP when the body omits it.

    Raises:
        RateLimitedAppError: 429 when the identifier is over its limit.
    """
    identifier = body.identifier or client_identifier(request)
    result = await evaluator.check_global_rate_limit(identifier, body.action)
    if not result.allowed:
        raise build_rate_limited_error(body.action, result)
    return RateLimitResultResponse.model_validate(result)
