"""Integration tests for the Redis durable queue and its worker.

Redis is fakeredis; the job store is a real SQLite database so the
envelope lifecycle is checked against the job records.

Run with:
    pytest backend/tests/integration/test_redis_queue.py -v
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from analysis_jobs.errors import PersistenceError, ProviderAuthError, ProviderTimeoutError
from analysis_jobs.models.job import JobStatus
from analysis_jobs.schemas.queue import QueueEnvelope
from analysis_jobs.services import redis_queue
from analysis_jobs.services.redis_queue import STUCK_JOB_ERROR, RedisJobQueue
from analysis_jobs.services.redis_worker import RedisJobWorker, envelope_for
from conftest import ANALYSIS_RESULT, API_KEY, flaky


class Clock:
    """Controllable replacement for redis_queue.now_ms."""

    def __init__(self, start_ms: int):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float):
        self.now += int(seconds * 1000)


@pytest.fixture
def clock(monkeypatch):
    clock = Clock(redis_queue.now_ms())
    monkeypatch.setattr(redis_queue, "now_ms", clock)
    return clock


@pytest.fixture
def queue(redis_client, store, worker_config) -> RedisJobQueue:
    return RedisJobQueue(redis_client, store, worker_config)


@pytest.fixture
def enqueue_job(store, queue, create_job):
    """Create a PENDING job and put its envelope on the queue."""
    async def _enqueue(**overrides) -> str:
        job_id = await create_job(**overrides)
        await queue.enqueue(envelope_for(await store.get_job(job_id)))
        return job_id

    return _enqueue


# ============================================================================
# Queue primitives
# ============================================================================

@pytest.mark.integration
class TestEnqueueDequeue:
    """Tests for claiming envelopes."""

    @pytest.mark.asyncio
    async def test_dequeue_claims_job(self, queue, store, enqueue_job):
        job_id = await enqueue_job()

        envelope = await queue.dequeue(timeout=1)

        assert envelope.job_id == job_id
        assert envelope.api_key == API_KEY
        assert envelope.attempts == 0
        assert (await store.get_job(job_id)).status == JobStatus.PROCESSING
        stats = await queue.get_stats()
        assert (stats.pending, stats.processing, stats.retrying) == (0, 1, 0)

    @pytest.mark.asyncio
    async def test_envelope_repr_hides_secrets(self, store, create_job):
        job = await store.get_job(await create_job())
        assert API_KEY not in repr(envelope_for(job))

    @pytest.mark.asyncio
    async def test_wire_format_is_camel_case(self, store, create_job):
        wire = envelope_for(await store.get_job(await create_job())).to_wire()
        assert '"jobId"' in wire
        assert '"maxAttempts"' in wire
        assert QueueEnvelope.from_wire(wire).file_name == "chat.txt"

    @pytest.mark.asyncio
    async def test_empty_queue_times_out(self, queue):
        assert await queue.dequeue(timeout=0.1) is None

    @pytest.mark.asyncio
    async def test_duplicate_envelopes_claimed_once(self, queue, store, create_job):
        job_id = await create_job()
        envelope = envelope_for(await store.get_job(job_id))
        await queue.enqueue(envelope)
        await queue.enqueue(envelope)

        first, second = await asyncio.gather(queue.dequeue(timeout=1), queue.dequeue(timeout=1))

        claimed = [e for e in (first, second) if e is not None]
        assert [e.job_id for e in claimed] == [job_id]
        stats = await queue.get_stats()
        assert (stats.pending, stats.processing) == (0, 1)

    @pytest.mark.asyncio
    async def test_cancelled_job_is_discarded(self, queue, store, enqueue_job):
        job_id = await enqueue_job()
        await store.cancel_job(job_id, "user-1")

        assert await queue.dequeue(timeout=1) is None

        stats = await queue.get_stats()
        assert (stats.pending, stats.processing) == (0, 0)
        assert (await store.get_job(job_id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_database_down_leaves_envelope_queued(self, queue, store, enqueue_job):
        await enqueue_job()
        store.ping = AsyncMock(return_value=False)

        assert await queue.dequeue(timeout=1) is None
        assert (await queue.get_stats()).pending == 1

    @pytest.mark.asyncio
    async def test_claim_write_error_returns_envelope(self, queue, store, redis_client, enqueue_job):
        job_id = await enqueue_job()
        store.mark_processing = AsyncMock(side_effect=PersistenceError("Job store unavailable"))

        assert await queue.dequeue(timeout=1) is None

        stats = await queue.get_stats()
        assert (stats.pending, stats.processing) == (1, 0)
        assert await redis_client.hget(queue.started_key, job_id) is None

    @pytest.mark.asyncio
    async def test_duplicate_keeps_holder_start_time(self, queue, store, redis_client, clock, create_job):
        job_id = await create_job()
        envelope = envelope_for(await store.get_job(job_id))
        await queue.enqueue(envelope)
        clock.advance(1)
        await queue.enqueue(envelope)

        clock.advance(5 * 60)
        claimed_at = clock.now
        assert await queue.dequeue(timeout=1) is not None
        clock.advance(10 * 60)
        assert await queue.dequeue(timeout=1) is None

        assert int(await redis_client.hget(queue.started_key, job_id)) == claimed_at
        assert (await queue.get_stats()).processing == 1

    @pytest.mark.asyncio
    async def test_complete_clears_processing(self, queue, redis_client, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)

        await queue.complete(job_id)

        assert (await queue.get_stats()).processing == 0
        assert await redis_client.hget(queue.started_key, job_id) is None


@pytest.mark.integration
class TestRetries:
    """Tests for fail(), the retry set and process_retries()."""

    @pytest.mark.asyncio
    async def test_retryable_failure_parked_with_backoff(self, queue, store, redis_client, clock, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)
        await store.mark_failed(job_id, "timeout")

        assert await queue.fail(job_id, "timeout") is True

        stats = await queue.get_stats()
        assert (stats.pending, stats.processing, stats.retrying) == (0, 0, 1)
        [(raw, score)] = await redis_client.zrange(queue.retry_key, 0, -1, withscores=True)
        assert int(score) == clock.now + 2000
        parked = QueueEnvelope.from_wire(raw)
        assert parked.attempts == 1
        assert parked.last_error == "timeout"

    @pytest.mark.asyncio
    async def test_process_retries_waits_for_ready_time(self, queue, store, clock, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)
        await store.mark_failed(job_id, "timeout")
        await queue.fail(job_id, "timeout")

        assert await queue.process_retries() == 0

        clock.advance(3)
        assert await queue.process_retries() == 1
        stats = await queue.get_stats()
        assert (stats.pending, stats.retrying) == (1, 0)
        assert (await store.get_job(job_id)).status == JobStatus.PENDING

        envelope = await queue.dequeue(timeout=1)
        assert envelope.attempts == 1

    @pytest.mark.asyncio
    async def test_non_retryable_failure_dropped(self, queue, store, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)

        assert await queue.fail(job_id, "bad key", retryable=False) is False
        stats = await queue.get_stats()
        assert (stats.pending, stats.processing, stats.retrying) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, queue, store, clock, enqueue_job):
        job_id = await enqueue_job()
        outcomes = []
        for _ in range(3):
            assert await queue.dequeue(timeout=1) is not None
            await store.mark_failed(job_id, "timeout")
            outcomes.append(await queue.fail(job_id, "timeout"))
            clock.advance(60)
            await queue.process_retries()

        assert outcomes == [True, True, False]
        stats = await queue.get_stats()
        assert (stats.pending, stats.processing, stats.retrying) == (0, 0, 0)
        assert (await store.get_job(job_id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_while_waiting_for_retry(self, queue, store, clock, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)
        await store.mark_failed(job_id, "timeout")
        await queue.fail(job_id, "timeout")
        await store.retry_job(job_id)
        await store.cancel_job(job_id, "user-1")

        clock.advance(3)
        assert await queue.process_retries() == 0
        assert (await queue.get_stats()).pending == 0


@pytest.mark.integration
class TestStuckJobs:
    """Tests for cleanup_stuck_jobs()."""

    @pytest.mark.asyncio
    async def test_stuck_job_failed(self, queue, store, clock, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)

        clock.advance(31 * 60)
        assert await queue.cleanup_stuck_jobs() == [job_id]

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == STUCK_JOB_ERROR
        stats = await queue.get_stats()
        assert (stats.processing, stats.retrying) == (0, 1)

    @pytest.mark.asyncio
    async def test_recent_job_left_alone(self, queue, store, clock, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)

        clock.advance(5 * 60)
        assert await queue.cleanup_stuck_jobs() == []
        assert (await store.get_job(job_id)).status == JobStatus.PROCESSING


# ============================================================================
# Worker
# ============================================================================

@pytest.fixture
def queue_worker(queue, store, executor, error_tracker, activity, worker_config) -> RedisJobWorker:
    return RedisJobWorker(queue, store, executor, error_tracker, activity, worker_config)


@pytest.mark.integration
class TestRedisJobWorker:
    """Tests for RedisJobWorker processing."""

    @pytest.mark.asyncio
    async def test_successful_job(self, queue_worker, queue, store, create_job):
        job_id = await create_job()
        await queue_worker.submit(job_id)

        assert await queue_worker.run_once() is True

        job = await store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == ANALYSIS_RESULT
        stats = await queue.get_stats()
        assert (stats.pending, stats.processing, stats.retrying) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_retryable_failure(self, queue_worker, queue, store, invoke, create_job):
        invoke.side_effect = ProviderTimeoutError("slow", provider="openai")
        job_id = await create_job()
        await queue_worker.submit(job_id)

        await queue_worker.run_once()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 1
        assert (await queue.get_stats()).retrying == 1

    @pytest.mark.asyncio
    async def test_fatal_failure(self, queue_worker, queue, store, invoke, error_tracker, create_job):
        invoke.side_effect = ProviderAuthError("OpenAI rejected the API key", provider="openai")
        job_id = await create_job()
        await queue_worker.submit(job_id)

        await queue_worker.run_once()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "Failed to analyze conversation: OpenAI rejected the API key"
        assert (await queue.get_stats()).retrying == 0
        assert len(await error_tracker.get_recent_errors()) == 1

    @pytest.mark.asyncio
    async def test_submit_ignores_finished_jobs(self, queue_worker, queue, store, create_job):
        job_id = await create_job()
        await store.cancel_job(job_id, "user-1")

        await queue_worker.submit(job_id)

        assert (await queue.get_stats()).pending == 0

    @pytest.mark.asyncio
    async def test_start_syncs_pending_jobs(self, queue_worker, store, create_job):
        job_id = await create_job()

        await queue_worker.start()
        for _ in range(200):
            if (await store.get_job(job_id)).status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        status = await queue_worker.status()
        await queue_worker.stop()

        assert (await store.get_job(job_id)).status == JobStatus.COMPLETED
        assert status["mode"] == "redis"
        assert status["queue"]["pending"] == 0

    @pytest.mark.asyncio
    async def test_maintenance_reports_stuck_jobs(self, queue_worker, error_tracker, clock, store, create_job):
        job_id = await create_job()
        await queue_worker.submit(job_id)
        await queue_worker.queue.dequeue(timeout=1)

        clock.advance(31 * 60)
        await queue_worker.run_maintenance()

        assert (await store.get_job(job_id)).status == JobStatus.FAILED
        errors = await error_tracker.get_recent_errors()
        assert errors[0].message == "Job stuck in processing"


@pytest.mark.integration
class TestRedisJobWorkerStoreFailures:
    """Database errors during the worker's own state writes."""

    @pytest.mark.asyncio
    async def test_completion_write_error_is_retried(self, queue_worker, queue, store, invoke, clock,
                                                     monkeypatch, create_job):
        monkeypatch.setattr(store, "mark_completed", flaky(store.mark_completed))
        job_id = await create_job()
        await queue_worker.submit(job_id)

        await queue_worker.run_once()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 1
        assert (await queue.get_stats()).retrying == 1

        clock.advance(60)
        await queue_worker.run_maintenance()
        await queue_worker.run_once()

        assert (await store.get_job(job_id)).status == JobStatus.COMPLETED
        assert invoke.await_count == 2
        stats = await queue.get_stats()
        assert (stats.pending, stats.processing, stats.retrying) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_unrecorded_failure_stays_owned(self, queue_worker, queue, store, invoke, clock,
                                                  monkeypatch, create_job):
        invoke.side_effect = [ProviderTimeoutError("slow", provider="openai"), dict(ANALYSIS_RESULT)]
        monkeypatch.setattr(store, "mark_failed", flaky(store.mark_failed))
        job_id = await create_job()
        await queue_worker.submit(job_id)

        await queue_worker.run_once()

        assert (await store.get_job(job_id)).status == JobStatus.PROCESSING
        assert (await queue.get_stats()).processing == 1
        assert (await queue_worker.status())["unrecordedFailures"] == 1

        await queue_worker.run_maintenance()

        job = await store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 1
        stats = await queue.get_stats()
        assert (stats.processing, stats.retrying) == (0, 1)

        clock.advance(60)
        await queue_worker.run_maintenance()
        await queue_worker.run_once()
        assert (await store.get_job(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_settles_job_left_processing(self, queue, store, redis_client, clock, enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)
        await queue.fail(job_id, "timeout")

        clock.advance(60)
        assert await queue.process_retries() == 1

        job = await store.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert (await queue.get_stats()).pending == 1

    @pytest.mark.asyncio
    async def test_stuck_sweep_keeps_envelope_when_store_is_down(self, queue, store, clock, monkeypatch,
                                                                 enqueue_job):
        job_id = await enqueue_job()
        await queue.dequeue(timeout=1)
        monkeypatch.setattr(store, "mark_failed", flaky(store.mark_failed))

        clock.advance(31 * 60)
        assert await queue.cleanup_stuck_jobs() == []
        assert (await queue.get_stats()).processing == 1

        assert await queue.cleanup_stuck_jobs() == [job_id]
        assert (await store.get_job(job_id)).status == JobStatus.FAILED
