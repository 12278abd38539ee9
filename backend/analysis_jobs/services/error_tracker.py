"""Platform error tracking with deduplication.

Errors with the same (category, message, code, provider, endpoint) seen
within the dedup window are folded into one row by bumping
``occurrence_count`` and ``last_occurred``. Logging an error never raises:
a failure to record a failure is only written to the process log.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analysis_jobs.errors import NotFoundError
from analysis_jobs.models.base import as_utc, utcnow
from analysis_jobs.models.platform_error import PlatformError, ErrorSeverity

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
MAX_STACK_TRACE_LENGTH = 5000
REDACTED = "[REDACTED]"

SENSITIVE_KEYS = (
    "password",
    "apikey",
    "api_key",
    "token",
    "secret",
    "authorization",
    "auth",
    "key",
    "credential",
    "pass",
)


def sanitize_data(value: Any) -> Any:
    """Recursively redact values whose key looks sensitive."""
    if isinstance(value, dict):
        sanitized = {}
        for k, v in value.items():
            lower = str(k).lower()
            if any(s in lower for s in SENSITIVE_KEYS):
                sanitized[k] = REDACTED
            else:
                sanitized[k] = sanitize_data(v)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_data(v) for v in value]
    return value


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text and len(text) > limit:
        return text[:limit] + "... (truncated)"
    return text


class ErrorTracker:
    """Writes and administers PlatformError rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], dedup_window_hours: int = 24):
        self._session_factory = session_factory
        self._dedup_window = timedelta(hours=dedup_window_hours)

    async def log_error(
        self,
        category: str,
        message: str,
        severity: str = ErrorSeverity.MEDIUM,
        code: Optional[str] = None,
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        stack_trace: Optional[str] = None,
        request_data: Optional[dict] = None,
        response_data: Optional[dict] = None,
        ai_provider: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> None:
        message = _truncate(message, MAX_MESSAGE_LENGTH)
        stack_trace = _truncate(stack_trace, MAX_STACK_TRACE_LENGTH)
        request_data = sanitize_data(request_data) if request_data else None
        response_data = sanitize_data(response_data) if response_data else None

        try:
            async with self._session_factory() as db:
                now = utcnow()
                query = select(PlatformError).where(
                    PlatformError.category == category,
                    PlatformError.message == message,
                    PlatformError.code == code,
                    PlatformError.ai_provider == ai_provider,
                    PlatformError.endpoint == endpoint,
                    PlatformError.last_occurred >= now - self._dedup_window,
                )
                existing = (await db.execute(query.limit(1))).scalar_one_or_none()

                if existing:
                    existing.occurrence_count = existing.occurrence_count + 1
                    existing.last_occurred = now
                    if stack_trace:
                        existing.stack_trace = stack_trace
                    if request_data:
                        existing.request_data = request_data
                    if response_data:
                        existing.response_data = response_data
                else:
                    db.add(PlatformError(
                        category=category,
                        severity=severity or ErrorSeverity.MEDIUM,
                        code=code,
                        message=message,
                        user_id=user_id,
                        endpoint=endpoint,
                        user_agent=user_agent,
                        session_id=session_id,
                        stack_trace=stack_trace,
                        request_data=request_data,
                        response_data=response_data,
                        ai_provider=ai_provider,
                        model_id=model_id,
                        occurrence_count=1,
                        first_occurred=now,
                        last_occurred=now,
                    ))
                await db.commit()
        except Exception as e:
            logger.error(f"Failed to log platform error: {e}")
            logger.error(f"Original error: [{category}] {message}")
            return

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(f"CRITICAL ERROR DETECTED: [{category}] {message} (user={user_id})")

    async def get_recent_errors(self, limit: int = 50, include_resolved: bool = True) -> list[PlatformError]:
        query = select(PlatformError).order_by(desc(PlatformError.last_occurred)).limit(limit)
        if not include_resolved:
            query = query.where(PlatformError.is_resolved.is_(False))
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def resolve_error(self, error_id: str, resolved_by: str, resolution: Optional[str] = None) -> PlatformError:
        async with self._session_factory() as db:
            error = await db.get(PlatformError, error_id)
            if error is None:
                raise NotFoundError(f"Error {error_id} not found")
            error.is_resolved = True
            error.resolved_at = utcnow()
            error.resolved_by = resolved_by
            error.resolution = resolution
            await db.commit()
            return error

    async def cleanup_old_errors(self, days_to_keep: int = 90) -> int:
        """Delete resolved errors older than the retention period."""
        cutoff = utcnow() - timedelta(days=days_to_keep)
        async with self._session_factory() as db:
            result = await db.execute(
                delete(PlatformError).where(
                    PlatformError.is_resolved.is_(True),
                    PlatformError.resolved_at < cutoff,
                )
            )
            await db.commit()
        logger.info(f"Cleaned up {result.rowcount} old resolved errors")
        return result.rowcount

    async def get_error(self, error_id: str) -> PlatformError:
        async with self._session_factory() as db:
            error = await db.get(PlatformError, error_id)
        if error is None:
            raise NotFoundError(f"Error {error_id} not found")
        return error

    async def search_errors(
        self,
        category: Optional[str] = None,
        severity: Optional[str] = None,
        ai_provider: Optional[str] = None,
        is_resolved: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search_term: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PlatformError], int]:
        """Filtered page of errors plus the total number of matches."""
        conditions = []
        if category:
            conditions.append(PlatformError.category == category)
        if severity:
            conditions.append(PlatformError.severity == severity)
        if ai_provider:
            conditions.append(PlatformError.ai_provider == ai_provider)
        if is_resolved is not None:
            conditions.append(PlatformError.is_resolved.is_(is_resolved))
        if start_date:
            conditions.append(PlatformError.created_at >= start_date)
        if end_date:
            conditions.append(PlatformError.created_at <= end_date)
        if search_term:
            pattern = f"%{search_term}%"
            conditions.append(or_(
                PlatformError.message.ilike(pattern),
                PlatformError.code.ilike(pattern),
                PlatformError.endpoint.ilike(pattern),
            ))

        async with self._session_factory() as db:
            total = await db.scalar(select(func.count()).select_from(PlatformError).where(*conditions))
            result = await db.execute(
                select(PlatformError)
                .where(*conditions)
                .order_by(desc(PlatformError.last_occurred))
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total or 0

    async def get_error_analytics(self, days: int = 30) -> dict:
        """Occurrence totals for errors first recorded in the last `days` days.

        Counts are sums of ``occurrence_count``, so folded duplicates count
        once per occurrence.
        """
        since = utcnow() - timedelta(days=days)
        in_period = PlatformError.created_at >= since
        occurrences = func.sum(PlatformError.occurrence_count)

        async with self._session_factory() as db:
            async def grouped(column, *extra) -> dict[str, int]:
                rows = await db.execute(select(column, occurrences).where(in_period, *extra).group_by(column))
                return {key: int(count or 0) for key, count in rows.all()}

            total = await db.scalar(select(occurrences).where(in_period)) or 0
            resolved = await db.scalar(
                select(occurrences).where(in_period, PlatformError.is_resolved.is_(True))
            ) or 0
            by_category = await grouped(PlatformError.category)
            by_severity = await grouped(PlatformError.severity)
            by_provider = await grouped(PlatformError.ai_provider, PlatformError.ai_provider.is_not(None))
            top = (await db.execute(
                select(PlatformError.message, PlatformError.occurrence_count, PlatformError.last_occurred)
                .where(in_period)
                .order_by(desc(PlatformError.occurrence_count))
                .limit(10)
            )).all()
            created = (await db.execute(
                select(PlatformError.created_at, PlatformError.occurrence_count).where(in_period)
            )).all()

        # Day buckets are UTC dates
        trends: dict[str, int] = defaultdict(int)
        for created_at, count in created:
            trends[as_utc(created_at).date().isoformat()] += count

        return {
            "total_errors": int(total),
            "errors_by_category": by_category,
            "errors_by_severity": by_severity,
            "errors_by_provider": by_provider,
            "top_errors": [
                {"message": message, "count": count, "last_occurred": last}
                for message, count, last in top
            ],
            "error_trends": [{"date": day, "count": trends[day]} for day in sorted(trends)],
            "resolution_rate": (resolved / total * 100) if total else 0.0,
        }
