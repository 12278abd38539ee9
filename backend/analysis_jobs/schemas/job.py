"""Job request/response schemas."""
from typing import Optional
from datetime import datetime
from pydantic import Field, field_validator
from analysis_jobs.schemas.base import CamelModel, CamelORMModel


class JobCreate(CamelModel):
    template_id: str
    model_id: str
    provider: str
    file_name: str = "chat.txt"
    file_content: str
    api_key: str = Field(repr=False)

    @field_validator("file_content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("File content is empty")
        return value


class JobCreated(CamelModel):
    job_id: str
    status: str


class JobStatusResponse(CamelORMModel):
    id: str
    status: str
    progress: int
    current_step: str
    total_steps: int
    retry_count: int = 0
    error: Optional[str] = None
    result: Optional[dict] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    is_complete: bool
    # milliseconds; None whenever it cannot be computed
    estimated_time_remaining: Optional[int] = None


class JobSummary(CamelORMModel):
    id: str
    status: str
    progress: int
    file_name: str
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
