"""PlatformError model - deduplicated error events."""
from datetime import datetime
from sqlalchemy import String, Text, JSON, Integer, Boolean, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from analysis_jobs.models.base import Base, new_id, utcnow


class ErrorCategory:
    SYSTEM = "system"
    DATABASE = "database"
    AI_PROVIDER = "ai-provider"
    QUEUE = "queue"
    VALIDATION = "validation"


class ErrorSeverity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PlatformError(Base):
    __tablename__ = "platform_errors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    category: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), default=ErrorSeverity.MEDIUM, index=True)
    code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    endpoint: Mapped[str | None] = mapped_column(String(500), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    ai_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    model_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1)
    first_occurred: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_occurred: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_platform_errors_dedup", "category", "message", "last_occurred"),
    )
