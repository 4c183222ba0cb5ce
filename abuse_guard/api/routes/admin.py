"""Admin reporting and maintenance endpoints (admin API key required)."""

from __future__ import annotations

from typing import Annotated, List

from fastapi import APIRouter, Depends, Query

from abuse_guard.core.auth import verify_admin_api_key
from abuse_guard.core.rate_limit import RateLimitEngine, get_admin_queries, get_engine
from abuse_guard.schemas.rate_limit import (
    PurgeCountersResponse,
    TopOffenderResponse,
    ViolationResponse,
    ViolationStatsResponse,
)
from abuse_guard.services.admin_queries import AdminQueryService

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_admin_api_key)],
)


@router.get("/violations/{subject_id}", response_model=List[ViolationResponse])
async def get_user_violations(
    subject_id: str,
    admin: Annotated[AdminQueryService, Depends(get_admin_queries)],
    limit: Annotated[int | None, Query(ge=1, le=1000)] = None,
) -> List[ViolationResponse]:
    """Return a user's violations, most recent first."""
    violations = await admin.get_user_violations(subject_id, limit=limit)
    return [ViolationResponse.model_validate(v) for v in violations]


@router.get("/top-offenders", response_model=List[TopOffenderResponse])
async def get_top_offenders(
    admin: Annotated[AdminQueryService, Depends(get_admin_queries)],
    limit: Annotated[int | None, Query(ge=1, le=1000)] = None,
) -> List[TopOffenderResponse]:
    """Return the subjects with the most violations over the trailing window."""
    offenders = await admin.get_top_offenders(limit=limit)
    return [TopOffenderResponse.model_validate(o) for o in offenders]


@router.get("/violation-stats", response_model=ViolationStatsResponse)
async def get_violation_stats(
    admin: Annotated[AdminQueryService, Depends(get_admin_queries)],
) -> ViolationStatsResponse:
    """Return violation totals per action over the trailing window."""
    return ViolationStatsResponse.model_validate(await admin.get_violation_stats())


@router.post("/counters/purge", response_model=PurgeCountersResponse)
async def purge_counters(
    engine: Annotated[RateLimitEngine, Depends(get_engine)],
) -> PurgeCountersResponse:
    """Drop counters and violation records past their retention horizons."""
    return PurgeCountersResponse(
        purged=await engine.purge_stale_counters(),
        violations_purged=await engine.purge_stale_violations(),
    )
