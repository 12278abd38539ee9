"""Job record store.

The single durable source of truth for job status, progress and result.
Both schedulers and the HTTP routes go through this class; none of them
touch ``background_jobs`` directly.

Every status transition is one conditional UPDATE ("where id = X and
status = Y") instead of read-then-write, so a cancel that lands while a
worker is mid-call is never overwritten by the worker's next write.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, desc, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analysis_jobs.errors import NotFoundError, PersistenceError
from analysis_jobs.models.base import as_utc, utcnow
from analysis_jobs.models.job import (
    BackgroundJob, JobStatus, JOB_TYPE_ANALYSIS, TOTAL_STEPS,
)

logger = logging.getLogger(__name__)


def estimate_time_remaining(status: str, progress: int, started_at: Optional[datetime],
                            now: Optional[datetime] = None) -> Optional[int]:
    """Milliseconds left, extrapolated from elapsed time and progress.

    None unless the job is PROCESSING with a start time and progress > 0.
    """
    if status != JobStatus.PROCESSING or not started_at or not progress:
        return None
    now = now or utcnow()
    elapsed_ms = (now - as_utc(started_at)).total_seconds() * 1000
    ratio = progress / 100
    remaining = elapsed_ms / ratio - elapsed_ms
    return max(0, int(remaining))


class JobStore:
    """Async CRUD and status transitions for background jobs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Job store unavailable: {e}") from e

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        try:
            async with self._session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except PersistenceError as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    # ── Caller-facing operations ─────────────────────────────────

    async def create_job(
        self, owner_id: str, template_id: str, model_id: str, provider: str,
        file_name: str, file_content: str, api_key: str,
    ) -> str:
        job = BackgroundJob(
            user_id=owner_id,
            type=JOB_TYPE_ANALYSIS,
            status=JobStatus.PENDING,
            template_id=template_id,
            model_id=model_id,
            provider=provider,
            file_name=file_name,
            file_content=file_content,
            api_key=api_key,
            progress=0,
            total_steps=TOTAL_STEPS,
            current_step="Queued for processing",
            retry_count=0,
        )
        async with self._session() as db:
            db.add(job)
            await db.commit()
        logger.info(f"Created background job {job.id} for user {owner_id}")
        return job.id

    async def get_job_status(self, job_id: str, owner_id: str) -> dict:
        """Full status for the owner. Other users' jobs look like missing jobs."""
        async with self._session() as db:
            result = await db.execute(
                select(BackgroundJob).where(
                    BackgroundJob.id == job_id,
                    BackgroundJob.user_id == owner_id,
                )
            )
            job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError("Job not found or access denied")
        return {
            "id": job.id,
            "status": job.status,
            "progress": job.progress,
            "current_step": job.current_step,
            "total_steps": job.total_steps,
            "retry_count": job.retry_count,
            "error": job.error,
            "result": job.result,
            "started_at": as_utc(job.started_at),
            "completed_at": as_utc(job.completed_at),
            "created_at": as_utc(job.created_at),
            "is_complete": job.status in JobStatus.FINISHED,
            "estimated_time_remaining": estimate_time_remaining(
                job.status, job.progress, job.started_at,
            ),
        }

    async def list_jobs(self, owner_id: str, limit: int = 10) -> list[BackgroundJob]:
        async with self._session() as db:
            result = await db.execute(
                select(BackgroundJob)
                .where(BackgroundJob.user_id == owner_id)
                .order_by(desc(BackgroundJob.created_at))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def cancel_job(self, job_id: str, owner_id: str) -> None:
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(
                    BackgroundJob.id == job_id,
                    BackgroundJob.user_id == owner_id,
                    BackgroundJob.status.in_(JobStatus.ACTIVE),
                )
                .values(
                    status=JobStatus.CANCELLED,
                    current_step="Cancelled by user",
                    completed_at=utcnow(),
                )
            )
            await db.commit()
        if result.rowcount == 0:
            raise NotFoundError("Job not found, already completed, or access denied")
        logger.info(f"Job {job_id} cancelled by user {owner_id}")

    async def retry_job(self, job_id: str) -> None:
        """Explicit retry of a terminally FAILED job; resets its retry budget."""
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id, BackgroundJob.status == JobStatus.FAILED)
                .values(
                    status=JobStatus.PENDING,
                    progress=0,
                    current_step="Queued for retry",
                    error=None,
                    started_at=None,
                    completed_at=None,
                    retry_count=0,
                )
            )
            await db.commit()
        if result.rowcount == 0:
            raise NotFoundError("Job not found or not in a failed state")
        logger.info(f"Job {job_id} queued for manual retry")

    # ── Worker-side operations ───────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[BackgroundJob]:
        async with self._session() as db:
            return await db.get(BackgroundJob, job_id)

    async def fetch_pending(self, limit: int, exclude_ids: Sequence[str] = ()) -> list[str]:
        """Ids of PENDING jobs, oldest first."""
        if limit <= 0:
            return []
        query = (
            select(BackgroundJob.id)
            .where(BackgroundJob.status == JobStatus.PENDING)
            .order_by(BackgroundJob.created_at)
            .limit(limit)
        )
        if exclude_ids:
            query = query.where(BackgroundJob.id.not_in(list(exclude_ids)))
        async with self._session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def update_progress(self, job_id: str, progress: int, step: str) -> bool:
        """Write progress without touching status. Never moves progress backwards."""
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(
                    BackgroundJob.id == job_id,
                    BackgroundJob.status == JobStatus.PROCESSING,
                    BackgroundJob.progress <= progress,
                )
                .values(progress=progress, current_step=step)
            )
            await db.commit()
        return result.rowcount > 0

    async def mark_processing(self, job_id: str) -> bool:
        """Claim a PENDING job. False if it is no longer PENDING."""
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id, BackgroundJob.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.PROCESSING,
                    started_at=utcnow(),
                    progress=0,
                    current_step="Starting analysis",
                    error=None,
                )
            )
            await db.commit()
        return result.rowcount > 0

    async def mark_completed(self, job_id: str, result_data: dict) -> bool:
        """PROCESSING -> COMPLETED. False when the job was cancelled meanwhile."""
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id, BackgroundJob.status == JobStatus.PROCESSING)
                .values(
                    status=JobStatus.COMPLETED,
                    result=result_data,
                    progress=100,
                    current_step="Analysis completed successfully",
                    completed_at=utcnow(),
                )
            )
            await db.commit()
        if result.rowcount == 0:
            logger.info(f"Job {job_id} is no longer processing, skipping completed update")
            return False
        return True

    async def mark_failed(self, job_id: str, error: str, *, count_attempt: bool = True) -> Optional[int]:
        """PROCESSING -> FAILED, counting the attempt.

        Returns the new retry count, or None if the job was no longer
        PROCESSING (e.g. cancelled).
        """
        values = {
            "status": JobStatus.FAILED,
            "error": error[:2000],
            "current_step": "Analysis failed",
            "completed_at": utcnow(),
        }
        if count_attempt:
            values["retry_count"] = BackgroundJob.retry_count + 1
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id, BackgroundJob.status == JobStatus.PROCESSING)
                .values(**values)
            )
            if result.rowcount == 0:
                await db.rollback()
                logger.info(f"Job {job_id} is no longer processing, skipping failed update")
                return None
            retry_count = await db.scalar(
                select(BackgroundJob.retry_count).where(BackgroundJob.id == job_id)
            )
            await db.commit()
        return retry_count

    async def set_failure_message(self, job_id: str, error: str) -> None:
        """Replace the error text of a FAILED job (final, user-facing message)."""
        async with self._session() as db:
            await db.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id, BackgroundJob.status == JobStatus.FAILED)
                .values(error=error[:2000])
            )
            await db.commit()

    async def requeue(self, job_id: str, max_retries: int, retry_count: Optional[int] = None) -> bool:
        """FAILED -> PENDING for another attempt, while the retry budget allows.

        When `retry_count` is given the update only applies if the stored
        count still matches it.
        """
        conditions = [
            BackgroundJob.id == job_id,
            BackgroundJob.status == JobStatus.FAILED,
            BackgroundJob.retry_count <= max_retries,
        ]
        step = "Retrying..."
        if retry_count is not None:
            if retry_count > max_retries:
                return False
            conditions.append(BackgroundJob.retry_count == retry_count)
            step = f"Retrying... (attempt {retry_count}/{max_retries})"
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(*conditions)
                .values(
                    status=JobStatus.PENDING,
                    progress=0,
                    current_step=step,
                    error=None,
                    started_at=None,
                    completed_at=None,
                )
            )
            await db.commit()
        return result.rowcount > 0

    async def recover_stale_jobs(self, stale_minutes: int = 15, exclude_ids: Sequence[str] = ()) -> int:
        """Mark jobs stuck in PROCESSING for longer than `stale_minutes` as failed.

        Call on startup to recover from process crashes that left jobs stranded,
        and periodically for jobs whose failure could not be written.
        """
        cutoff = utcnow() - timedelta(minutes=stale_minutes)
        conditions = [
            BackgroundJob.status == JobStatus.PROCESSING,
            BackgroundJob.started_at < cutoff,
        ]
        if exclude_ids:
            conditions.append(BackgroundJob.id.not_in(list(exclude_ids)))
        async with self._session() as db:
            result = await db.execute(
                update(BackgroundJob)
                .where(and_(*conditions))
                .values(
                    status=JobStatus.FAILED,
                    error=f"Recovered stale job: processing for >{stale_minutes} minutes",
                    current_step="Analysis failed",
                    completed_at=utcnow(),
                )
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Recovered {result.rowcount} stale job(s)")
        return result.rowcount
