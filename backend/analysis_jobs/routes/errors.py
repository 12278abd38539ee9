"""Admin API for recorded platform errors."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from analysis_jobs.dependencies import get_error_tracker
from analysis_jobs.errors import NotFoundError
from analysis_jobs.schemas.error import (
    ErrorAnalytics,
    ErrorDetailResponse,
    ErrorEventResponse,
    ErrorResolve,
    ErrorSearchResponse,
)
from analysis_jobs.services.error_tracker import ErrorTracker

router = APIRouter(prefix="/api/admin/errors", tags=["admin"])


@router.get("", response_model=list[ErrorEventResponse])
async def list_errors(
    limit: int = Query(50, ge=1, le=500),
    include_resolved: bool = Query(True),
    tracker: ErrorTracker = Depends(get_error_tracker),
):
    """Most recently seen errors first."""
    return await tracker.get_recent_errors(limit=limit, include_resolved=include_resolved)


@router.get("/analytics", response_model=ErrorAnalytics)
async def error_analytics(
    days: int = Query(30, ge=1, le=365),
    tracker: ErrorTracker = Depends(get_error_tracker),
):
    return await tracker.get_error_analytics(days=days)


@router.get("/search", response_model=ErrorSearchResponse)
async def search_errors(
    category: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    ai_provider: Optional[str] = Query(None, alias="aiProvider"),
    is_resolved: Optional[bool] = Query(None, alias="isResolved"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    q: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tracker: ErrorTracker = Depends(get_error_tracker),
):
    """Filter by category, severity, provider, resolution and date range; `q` matches message, code or endpoint."""
    errors, total = await tracker.search_errors(
        category=category,
        severity=severity,
        ai_provider=ai_provider,
        is_resolved=is_resolved,
        start_date=start_date,
        end_date=end_date,
        search_term=q,
        limit=limit,
        offset=offset,
    )
    return ErrorSearchResponse(
        errors=[ErrorEventResponse.model_validate(e) for e in errors],
        total=total,
    )


@router.get("/{error_id}", response_model=ErrorDetailResponse)
async def get_error(
    error_id: str,
    tracker: ErrorTracker = Depends(get_error_tracker),
):
    try:
        return await tracker.get_error(error_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{error_id}/resolve", response_model=ErrorEventResponse)
async def resolve_error(
    error_id: str,
    body: ErrorResolve,
    tracker: ErrorTracker = Depends(get_error_tracker),
):
    try:
        return await tracker.resolve_error(error_id, body.resolved_by, body.resolution)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
