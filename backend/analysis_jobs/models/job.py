"""BackgroundJob model - durable record of one analysis job."""
from datetime import datetime
from sqlalchemy import String, Text, JSON, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from analysis_jobs.models.base import Base, TimestampMixin, UserMixin, new_id


class JobStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    ACTIVE = (PENDING, PROCESSING)
    FINISHED = (COMPLETED, FAILED, CANCELLED)


JOB_TYPE_ANALYSIS = "ANALYSIS"
TOTAL_STEPS = 4


class BackgroundJob(Base, TimestampMixin, UserMixin):
    __tablename__ = "background_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(20), default=JOB_TYPE_ANALYSIS)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING, index=True)
    template_id: Mapped[str] = mapped_column(String(100), default="")
    model_id: Mapped[str] = mapped_column(String(100), default="")
    provider: Mapped[str] = mapped_column(String(50), default="")
    file_name: Mapped[str] = mapped_column(String(500), default="")
    file_content: Mapped[str] = mapped_column(Text, default="")
    api_key: Mapped[str] = mapped_column(Text, default="")
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[str] = mapped_column(String(200), default="")
    total_steps: Mapped[int] = mapped_column(Integer, default=TOTAL_STEPS)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_background_jobs_status_created", "status", "created_at"),
        Index("idx_background_jobs_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<BackgroundJob {self.id} status={self.status} provider={self.provider}>"
