"""Import all models so SQLAlchemy metadata knows about them."""
from analysis_jobs.models.base import Base
from analysis_jobs.models.job import BackgroundJob, JobStatus
from analysis_jobs.models.platform_error import PlatformError, ErrorCategory, ErrorSeverity
from analysis_jobs.models.user_activity import UserActivity

__all__ = [
    "Base",
    "BackgroundJob", "JobStatus",
    "PlatformError", "ErrorCategory", "ErrorSeverity",
    "UserActivity",
]
