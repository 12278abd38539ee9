"""In-process polling job worker.

Polls the background_jobs table for PENDING jobs every few seconds and
processes them. Runs as an asyncio task within the FastAPI process.

In-flight jobs are held in a task dict bounded by max_concurrent_jobs and
an asyncio.Semaphore. The hold is per-process, so this worker is not safe
to run in several processes against the same database; use the Redis
scheduler for that.
"""
import asyncio
import logging
import traceback
from typing import Optional

from analysis_jobs.errors import PersistenceError, PromptPreparationError, UnsupportedProviderError
from analysis_jobs.models.base import as_utc, utcnow
from analysis_jobs.models.platform_error import ErrorCategory, ErrorSeverity
from analysis_jobs.services.analysis import (
    AnalysisExecutor,
    describe_failure,
    is_retryable,
    safe_error_message,
)
from analysis_jobs.services.scheduler import JobScheduler, WorkerConfig

logger = logging.getLogger(__name__)


def format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


class PollingJobWorker(JobScheduler):
    """Discovers work by polling the job store."""

    mode = "poller"

    def __init__(self, store, executor: AnalysisExecutor, error_tracker, activity, config: WorkerConfig):
        self.store = store
        self.executor = executor
        self.error_tracker = error_tracker
        self.activity = activity
        self.config = config
        self._held: dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(config.max_concurrent_jobs)
        self._retry_timers: set[asyncio.Task] = set()
        # job_id -> (job, exc) for failures the store could not record yet
        self._unrecorded_failures: dict[str, tuple] = {}
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def held_jobs(self) -> set[str]:
        return set(self._held)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._loop_task and not self._loop_task.done():
            logger.info("Job worker is already running")
            return
        try:
            await self.store.recover_stale_jobs(self.config.stale_job_minutes)
        except PersistenceError as e:
            logger.error(f"Could not recover stale jobs on startup: {e}")
        self._loop_task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        tasks = list(self._held.values()) + list(self._retry_timers)
        if self._loop_task:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._held.clear()
        self._retry_timers.clear()
        logger.info("Job worker stopped")

    async def submit(self, job_id: str) -> None:
        # Picked up on the next tick
        logger.debug(f"Job {job_id} will be picked up by the poller")

    async def status(self) -> dict:
        return {
            "mode": self.mode,
            "running": bool(self._loop_task and not self._loop_task.done()),
            "inFlight": len(self._held),
            "scheduledRetries": len(self._retry_timers),
            "unrecordedFailures": len(self._unrecorded_failures),
            "maxConcurrentJobs": self.config.max_concurrent_jobs,
        }

    async def _run_loop(self):
        """Main worker loop. Polls for pending jobs every poll_interval seconds."""
        logger.info("Job worker started")
        loop = asyncio.get_running_loop()
        last_sweep = loop.time()
        while True:
            try:
                if loop.time() - last_sweep >= self.config.stale_sweep_interval:
                    last_sweep = loop.time()
                    await self.sweep_stale_jobs()
                await self.tick()
            except Exception as e:
                logger.error(f"Worker loop error: {e}")
                await self.error_tracker.log_error(
                    category=ErrorCategory.SYSTEM,
                    severity=ErrorSeverity.HIGH,
                    message="Background job processing loop error",
                    stack_trace=format_stack(e),
                )
            await asyncio.sleep(self.config.poll_interval)

    # ── Scheduling ───────────────────────────────────────────────

    async def tick(self) -> list[str]:
        """Pick up as many pending jobs as there is free capacity for."""
        await self._retry_unrecorded_failures()

        capacity = self.config.max_concurrent_jobs - len(self._held)
        if capacity <= 0:
            return []

        job_ids = await self.store.fetch_pending(capacity, exclude_ids=list(self._held))
        for job_id in job_ids:
            self._held[job_id] = asyncio.create_task(self._run_held(job_id))
        return job_ids

    async def sweep_stale_jobs(self) -> int:
        """Fail PROCESSING jobs past the stale threshold that this worker is not running."""
        return await self.store.recover_stale_jobs(self.config.stale_job_minutes, exclude_ids=list(self._held))

    async def drain(self) -> None:
        """Wait until every in-flight job and scheduled retry has finished."""
        while self._held or self._retry_timers:
            await asyncio.gather(
                *self._held.values(), *self._retry_timers, return_exceptions=True,
            )

    async def _run_held(self, job_id: str):
        try:
            async with self._semaphore:
                await self.process_job(job_id)
        except Exception as e:
            logger.error(f"Error processing job {job_id}: {e}")
        finally:
            self._held.pop(job_id, None)

    # ── Job processing ───────────────────────────────────────────

    async def process_job(self, job_id: str) -> None:
        if not await self.store.mark_processing(job_id):
            logger.info(f"Job {job_id} is no longer pending, skipping")
            return

        job = None
        try:
            job = await self.store.get_job(job_id)
            logger.info(f"Processing job {job_id} (provider={job.provider if job else '?'})")
            if job is None or not job.file_content:
                raise PromptPreparationError("Job not found or missing file content")

            async def report(progress: int, step: str):
                await self.store.update_progress(job_id, progress, step)

            result = await self.executor.run(job, progress=report)

            if await self.store.mark_completed(job_id, result):
                logger.info(f"Completed background job {job_id}")
                duration_ms = None
                if job.started_at:
                    duration_ms = int((utcnow() - as_utc(job.started_at)).total_seconds() * 1000)
                await self.activity.track_activity(
                    user_id=job.user_id,
                    action="analysis_job_completed",
                    category="analysis",
                    metadata={"jobId": job_id, "fileName": job.file_name, "durationMs": duration_ms},
                )
        except Exception as e:
            await self._handle_failure(job_id, job, e)

    async def _retry_unrecorded_failures(self) -> None:
        for job_id, (job, exc) in list(self._unrecorded_failures.items()):
            del self._unrecorded_failures[job_id]
            await self._handle_failure(job_id, job, exc)

    async def _write_failure(self, job_id: str, message: str) -> Optional[int]:
        # Retry the write so a transient DB error doesn't strand the job in PROCESSING
        for attempt in range(3):
            try:
                return await self.store.mark_failed(job_id, message)
            except PersistenceError as db_err:
                logger.error(f"Failed to mark job {job_id} as failed (attempt {attempt + 1}/3): {db_err}")
                if attempt == 2:
                    raise
                await asyncio.sleep(self.config.failure_write_backoff)

    async def _handle_failure(self, job_id: str, job, exc: Exception) -> None:
        message = safe_error_message(exc)
        logger.error(f"Failed to process job {job_id}: {message}")

        try:
            retry_count = await self._write_failure(job_id, message)
        except PersistenceError:
            logger.error(f"Job {job_id} left in PROCESSING, recording its failure on the next tick")
            self._unrecorded_failures[job_id] = (job, exc)
            return
        if retry_count is None:
            return

        if is_retryable(exc) and retry_count < self.config.retry_attempts:
            delay = self.config.retry_delay_ms * retry_count / 1000
            logger.info(
                f"Retrying job {job_id} (attempt {retry_count}/{self.config.retry_attempts}) in {delay:.1f}s"
            )
            timer = asyncio.create_task(self._requeue_later(job_id, retry_count, delay))
            self._retry_timers.add(timer)
            timer.add_done_callback(self._retry_timers.discard)
            return

        await self.store.set_failure_message(job_id, describe_failure(exc, retry_count))

        user_id = job.user_id if job else None
        await self.error_tracker.log_error(
            category=ErrorCategory.SYSTEM if isinstance(exc, UnsupportedProviderError) else ErrorCategory.AI_PROVIDER,
            severity=ErrorSeverity.HIGH,
            message=f"Background analysis job failed: {message}",
            user_id=user_id,
            stack_trace=format_stack(exc),
            request_data={
                "jobId": job_id,
                "fileName": job.file_name if job else None,
                "provider": job.provider if job else None,
                "modelId": job.model_id if job else None,
                "templateId": job.template_id if job else None,
            },
            ai_provider=job.provider if job else None,
            model_id=job.model_id if job else None,
        )
        if user_id:
            await self.activity.track_activity(
                user_id=user_id,
                action="analysis_job_failed",
                category="analysis",
                metadata={"jobId": job_id, "error": message},
            )

    async def _requeue_later(self, job_id: str, retry_count: int, delay: float):
        await asyncio.sleep(delay)
        try:
            if await self.store.requeue(job_id, self.config.retry_attempts, retry_count=retry_count):
                logger.info(f"Job {job_id} back in the pending queue")
        except PersistenceError as e:
            logger.error(f"Could not requeue job {job_id}: {e}")
