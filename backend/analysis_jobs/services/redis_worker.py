"""Durable-queue job worker.

Consumes envelopes from RedisJobQueue, runs the analysis and writes the
outcome to the job store. A maintenance task periodically moves due retries
back to pending and fails envelopes stuck in processing. Several processes
can run this worker against the same Redis and database.
"""
import asyncio
import logging
from typing import Optional

from analysis_jobs.errors import PersistenceError, UnsupportedProviderError
from analysis_jobs.models.job import JobStatus
from analysis_jobs.models.platform_error import ErrorCategory, ErrorSeverity
from analysis_jobs.schemas.queue import QueueEnvelope
from analysis_jobs.services.analysis import (
    AnalysisExecutor,
    describe_failure,
    is_retryable,
    safe_error_message,
)
from analysis_jobs.services.job_worker import format_stack
from analysis_jobs.services.redis_queue import RedisJobQueue, now_ms
from analysis_jobs.services.scheduler import JobScheduler, WorkerConfig

logger = logging.getLogger(__name__)


def envelope_for(job) -> QueueEnvelope:
    return QueueEnvelope(
        job_id=job.id,
        user_id=job.user_id,
        template_id=job.template_id,
        model_id=job.model_id,
        provider=job.provider,
        file_name=job.file_name,
        file_content=job.file_content,
        api_key=job.api_key,
        retry_count=job.retry_count,
    )


class RedisJobWorker(JobScheduler):
    """Runs jobs handed out by the durable queue."""

    mode = "redis"

    def __init__(self, queue: RedisJobQueue, store, executor: AnalysisExecutor,
                 error_tracker, activity, config: WorkerConfig):
        self.queue = queue
        self.store = store
        self.executor = executor
        self.error_tracker = error_tracker
        self.activity = activity
        self.config = config
        self._loop_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        # job_id -> (envelope, exc) for failures the store could not record yet
        self._unrecorded_failures: dict[str, tuple] = {}

    async def start(self) -> None:
        if self._loop_task and not self._loop_task.done():
            logger.info("Queue worker is already running")
            return
        try:
            await self.sync_pending_jobs()
        except PersistenceError as e:
            logger.error(f"Could not enqueue pending jobs on startup: {e}")
        self._loop_task = asyncio.create_task(self._process_jobs())
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        tasks = [t for t in (self._loop_task, self._maintenance_task) if t]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._maintenance_task = None
        logger.info("Queue worker stopped")

    async def submit(self, job_id: str) -> None:
        job = await self.store.get_job(job_id)
        if job is None or job.status != JobStatus.PENDING:
            logger.info(f"Job {job_id} is not pending, not enqueuing")
            return
        await self.queue.enqueue(envelope_for(job))

    async def sync_pending_jobs(self, limit: int = 100) -> int:
        """Enqueue PENDING jobs that were created while no worker was running."""
        job_ids = await self.store.fetch_pending(limit)
        for job_id in job_ids:
            await self.submit(job_id)
        if job_ids:
            logger.info(f"Enqueued {len(job_ids)} pending job(s) from the job store")
        return len(job_ids)

    async def status(self) -> dict:
        stats = await self.queue.get_stats()
        return {
            "mode": self.mode,
            "running": bool(self._loop_task and not self._loop_task.done()),
            "queue": stats.model_dump(),
            "unrecordedFailures": len(self._unrecorded_failures),
        }

    # ── Loops ────────────────────────────────────────────────────

    async def _process_jobs(self):
        logger.info("Queue worker started")
        while True:
            try:
                if not await self.store.ping():
                    logger.error("Database unavailable, pausing job processing")
                    await asyncio.sleep(self.config.db_unavailable_backoff)
                    continue
                await self.run_once()
            except Exception as e:
                logger.error(f"Queue worker loop error: {e}")
                await asyncio.sleep(self.config.loop_error_backoff)

    async def _maintenance_loop(self):
        while True:
            await asyncio.sleep(self.config.maintenance_interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error(f"Queue maintenance error: {e}")

    async def run_maintenance(self) -> None:
        await self._retry_unrecorded_failures()
        await self.queue.process_retries()
        stuck = await self.queue.cleanup_stuck_jobs()
        for job_id in stuck:
            await self.error_tracker.log_error(
                category=ErrorCategory.QUEUE,
                severity=ErrorSeverity.MEDIUM,
                message="Job stuck in processing",
                request_data={"jobId": job_id},
            )

    async def run_once(self) -> bool:
        """Claim and process at most one envelope. False if none was claimed."""
        envelope = await self.queue.dequeue()
        if envelope is None:
            return False
        await self.process_envelope(envelope)
        return True

    # ── Job processing ───────────────────────────────────────────

    async def process_envelope(self, envelope: QueueEnvelope) -> None:
        job_id = envelope.job_id
        logger.info(f"Processing job {job_id} (provider={envelope.provider}, attempt {envelope.attempts + 1})")
        started = now_ms()
        try:
            async def report(progress: int, step: str):
                await self.store.update_progress(job_id, progress, step)

            result = await self.executor.run(envelope, progress=report)

            # The envelope only leaves processing once the outcome is stored
            completed = await self.store.mark_completed(job_id, result)
            await self.queue.complete(job_id)
            if completed:
                logger.info(f"Completed background job {job_id}")
                await self.activity.track_activity(
                    user_id=envelope.user_id,
                    action="analysis_job_completed",
                    category="analysis",
                    metadata={
                        "jobId": job_id,
                        "fileName": envelope.file_name,
                        "durationMs": now_ms() - started,
                    },
                )
        except Exception as e:
            await self._handle_failure(envelope, e)

    async def _retry_unrecorded_failures(self) -> None:
        for job_id, (envelope, exc) in list(self._unrecorded_failures.items()):
            del self._unrecorded_failures[job_id]
            await self._handle_failure(envelope, exc)

    async def _handle_failure(self, envelope: QueueEnvelope, exc: Exception) -> None:
        job_id = envelope.job_id
        message = safe_error_message(exc)
        logger.error(f"Failed to process job {job_id}: {message}")

        try:
            retry_count = await self.store.mark_failed(job_id, message)
        except PersistenceError as e:
            logger.error(f"Could not mark job {job_id} as failed, keeping it in processing: {e}")
            self._unrecorded_failures[job_id] = (envelope, exc)
            return
        if retry_count is None:
            # Cancelled while running
            await self.queue.complete(job_id)
            return

        if await self.queue.fail(job_id, message, retryable=is_retryable(exc)):
            return

        await self.store.set_failure_message(job_id, describe_failure(exc, envelope.attempts + 1))
        await self.error_tracker.log_error(
            category=ErrorCategory.SYSTEM if isinstance(exc, UnsupportedProviderError) else ErrorCategory.AI_PROVIDER,
            severity=ErrorSeverity.HIGH,
            message=f"Background analysis job failed: {message}",
            user_id=envelope.user_id,
            stack_trace=format_stack(exc),
            request_data={
                "jobId": job_id,
                "fileName": envelope.file_name,
                "provider": envelope.provider,
                "modelId": envelope.model_id,
                "templateId": envelope.template_id,
            },
            ai_provider=envelope.provider,
            model_id=envelope.model_id,
        )
        await self.activity.track_activity(
            user_id=envelope.user_id,
            action="analysis_job_failed",
            category="analysis",
            metadata={"jobId": job_id, "error": message},
        )
