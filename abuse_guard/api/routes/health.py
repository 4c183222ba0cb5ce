from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from abuse_guard.core.rate_limit import RateLimitEngine, get_engine
from abuse_guard.schemas.rate_limit import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(engine: Annotated[RateLimitEngine, Depends(get_engine)]) -> HealthResponse:
    """Health check endpoint.

    Reports liveness plus the number of live counters, which doubles as a
    probe that the counter store answers.

    Returns:
        HealthResponse with status "ok" and the live counter count.
    """

    return HealthResponse(status="ok", counters=await engine.counter_store.count_counters())
