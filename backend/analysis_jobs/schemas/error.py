"""Platform error schemas for the admin endpoints."""
from typing import Optional
from datetime import datetime
from analysis_jobs.schemas.base import CamelModel, CamelORMModel


class ErrorEventResponse(CamelORMModel):
    id: str
    category: str
    severity: str
    code: Optional[str] = None
    message: str
    user_id: Optional[str] = None
    endpoint: Optional[str] = None
    ai_provider: Optional[str] = None
    model_id: Optional[str] = None
    occurrence_count: int
    first_occurred: datetime
    last_occurred: datetime
    is_resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None


class ErrorResolve(CamelModel):
    resolved_by: str
    resolution: Optional[str] = None


class ErrorDetailResponse(ErrorEventResponse):
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    stack_trace: Optional[str] = None
    request_data: Optional[dict] = None
    response_data: Optional[dict] = None
    created_at: datetime


class ErrorSearchResponse(CamelModel):
    errors: list[ErrorEventResponse]
    total: int


class TopError(CamelModel):
    message: str
    count: int
    last_occurred: datetime


class ErrorTrendPoint(CamelModel):
    date: str
    count: int


class ErrorAnalytics(CamelModel):
    total_errors: int
    errors_by_category: dict[str, int]
    errors_by_severity: dict[str, int]
    errors_by_provider: dict[str, int]
    top_errors: list[TopError]
    error_trends: list[ErrorTrendPoint]
    resolution_rate: float
