"""Scheduler interface and selection.

A scheduler decides when a PENDING job gets executed. Two implementations
exist: the in-process poller (services/job_worker.py) and the Redis-backed
durable queue (services/redis_worker.py). They are mutually exclusive
deployment modes picked by SCHEDULER_MODE; both keep the job record store
as the only source of truth, so the routes never need to know which one
is running.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from analysis_jobs.config import Settings

logger = logging.getLogger(__name__)

SCHEDULER_MODES = ("poller", "redis", "none")


@dataclass
class WorkerConfig:
    max_concurrent_jobs: int = 3
    retry_attempts: int = 3
    retry_delay_ms: int = 5000
    poll_interval: float = 5.0
    stale_job_minutes: int = 15
    stale_sweep_interval: float = 300.0
    failure_write_backoff: float = 1.0
    queue_key_prefix: str = "analysis"
    queue_max_attempts: int = 3
    dequeue_timeout: float = 5.0
    maintenance_interval: float = 60.0
    stuck_job_minutes: int = 30
    db_unavailable_backoff: float = 10.0
    loop_error_backoff: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerConfig":
        return cls(
            max_concurrent_jobs=settings.MAX_CONCURRENT_JOBS,
            retry_attempts=settings.RETRY_ATTEMPTS,
            retry_delay_ms=settings.RETRY_DELAY_MS,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            stale_job_minutes=settings.STALE_JOB_MINUTES,
            stale_sweep_interval=settings.STALE_SWEEP_INTERVAL_SECONDS,
            queue_key_prefix=settings.QUEUE_KEY_PREFIX,
            queue_max_attempts=settings.QUEUE_MAX_ATTEMPTS,
            dequeue_timeout=settings.QUEUE_DEQUEUE_TIMEOUT_SECONDS,
            maintenance_interval=settings.QUEUE_MAINTENANCE_INTERVAL_SECONDS,
            stuck_job_minutes=settings.QUEUE_STUCK_JOB_MINUTES,
        )


class JobScheduler(ABC):
    """Long-lived service object owning a worker loop."""

    mode = ""

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def submit(self, job_id: str) -> None:
        """Called after a job is created (or manually retried)."""

    async def status(self) -> dict:
        return {"mode": self.mode}


class NullScheduler(JobScheduler):
    """API-only process: jobs are recorded but executed elsewhere."""

    mode = "none"

    async def start(self) -> None:
        logger.info("No job scheduler configured in this process")

    async def stop(self) -> None:
        pass

    async def submit(self, job_id: str) -> None:
        pass


def create_scheduler(mode: str, *, store, executor, error_tracker, activity,
                     config: WorkerConfig, redis=None) -> JobScheduler:
    """Build the scheduler for SCHEDULER_MODE."""
    if mode == "poller":
        from analysis_jobs.services.job_worker import PollingJobWorker
        return PollingJobWorker(store, executor, error_tracker, activity, config)
    if mode == "redis":
        if redis is None:
            raise ValueError("SCHEDULER_MODE=redis requires a Redis client")
        from analysis_jobs.services.redis_queue import RedisJobQueue
        from analysis_jobs.services.redis_worker import RedisJobWorker
        queue = RedisJobQueue(redis, store, config)
        return RedisJobWorker(queue, store, executor, error_tracker, activity, config)
    if mode == "none":
        return NullScheduler()
    raise ValueError(f"Unknown SCHEDULER_MODE: {mode} (expected one of {', '.join(SCHEDULER_MODES)})")
