"""Redis-backed durable job queue.

Keys (all under QUEUE_KEY_PREFIX):

    <prefix>:pending              list, LPUSH in / consumed from the right
    <prefix>:processing           list of envelopes a worker has claimed
    <prefix>:retry                sorted set, score = ready-at epoch ms
    <prefix>:processing_started   hash job_id -> claim time (epoch ms)

Claiming uses BLMOVE, so an envelope moves from pending to processing in
one atomic step and two workers can never hold the same copy. The job
record in the database stays authoritative: a claimed envelope whose job
is no longer PENDING (cancelled, or a duplicate copy) is dropped.
"""
import logging
import time
from typing import Optional

from pydantic import ValidationError

from analysis_jobs.errors import PersistenceError
from analysis_jobs.models.job import JobStatus
from analysis_jobs.schemas.queue import QueueEnvelope, QueueStats

logger = logging.getLogger(__name__)

STUCK_JOB_ERROR = "Job timeout - processing took too long"


def now_ms() -> int:
    return int(time.time() * 1000)


def retry_delay_ms(attempts: int) -> int:
    """Exponential backoff: 2s, 4s, 8s, ..."""
    return (2 ** attempts) * 1000


class RedisJobQueue:
    """Envelope bookkeeping across the pending, processing and retry keys."""

    def __init__(self, redis, store, config):
        self.redis = redis
        self.store = store
        self.config = config
        prefix = config.queue_key_prefix
        self.pending_key = f"{prefix}:pending"
        self.processing_key = f"{prefix}:processing"
        self.retry_key = f"{prefix}:retry"
        self.started_key = f"{prefix}:processing_started"

    async def enqueue(self, envelope: QueueEnvelope) -> None:
        envelope = envelope.model_copy(update={
            "attempts": 0,
            "max_attempts": self.config.queue_max_attempts,
            "created_at": now_ms(),
        })
        await self.redis.lpush(self.pending_key, envelope.to_wire())
        logger.info(f"Enqueued job {envelope.job_id}")

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[QueueEnvelope]:
        """Claim the next envelope, blocking up to `timeout` seconds.

        Returns None when the queue stays empty, when the database is
        unreachable, or when the claimed job is no longer PENDING.
        """
        if not await self.store.ping():
            logger.error("Database unavailable, not dequeuing")
            return None

        timeout = self.config.dequeue_timeout if timeout is None else timeout
        raw = await self.redis.blmove(self.pending_key, self.processing_key, timeout, "RIGHT", "LEFT")
        if raw is None:
            return None

        try:
            envelope = QueueEnvelope.from_wire(raw)
        except ValidationError as e:
            logger.error(f"Dropping malformed queue entry: {e}")
            await self.redis.lrem(self.processing_key, 1, raw)
            return None

        await self._mark_started(envelope.job_id)

        try:
            claimed = await self.store.mark_processing(envelope.job_id)
        except PersistenceError as e:
            # Hand the envelope back to the consuming end of pending
            logger.error(f"Could not claim job {envelope.job_id}, returning it to the queue: {e}")
            await self._release(envelope.job_id, raw, to_pending=True)
            return None

        if not claimed:
            logger.info(f"Job {envelope.job_id} is no longer pending, discarding envelope")
            await self._release(envelope.job_id, raw)
            return None
        return envelope

    async def complete(self, job_id: str) -> None:
        raw = await self._find_processing(job_id)
        if raw is not None:
            await self._release(job_id, raw)

    async def fail(self, job_id: str, error: str, *, retryable: bool = True) -> bool:
        """Take the envelope out of processing after a failed attempt.

        Returns True when it was parked in the retry set, False when it was
        dropped for good.
        """
        raw = await self._find_processing(job_id)
        if raw is None:
            return False

        envelope = QueueEnvelope.from_wire(raw)
        envelope.attempts += 1
        envelope.last_error = error
        envelope.last_attempt = now_ms()

        if retryable and envelope.attempts < envelope.max_attempts:
            delay = retry_delay_ms(envelope.attempts)
            await self._release(job_id, raw, retry=(envelope.to_wire(), envelope.last_attempt + delay))
            logger.info(
                f"Job {job_id} scheduled for retry "
                f"(attempt {envelope.attempts}/{envelope.max_attempts}) in {delay}ms"
            )
            return True

        await self._release(job_id, raw)
        logger.warning(f"Job {job_id} failed permanently after {envelope.attempts} attempt(s): {error}")
        return False

    async def process_retries(self) -> int:
        """Move retry envelopes whose time has come back onto pending."""
        moved = 0
        for raw in await self.redis.zrangebyscore(self.retry_key, 0, now_ms()):
            # Whoever removes the member owns it
            if not await self.redis.zrem(self.retry_key, raw):
                continue
            envelope = QueueEnvelope.from_wire(raw)
            try:
                requeued = await self.store.requeue(envelope.job_id, envelope.max_attempts)
                if not requeued and await self._settle_unrecorded_failure(envelope):
                    requeued = await self.store.requeue(envelope.job_id, envelope.max_attempts)
            except PersistenceError as e:
                logger.error(f"Could not requeue job {envelope.job_id}, keeping it in the retry set: {e}")
                await self.redis.zadd(self.retry_key, {raw: now_ms()})
                break
            if not requeued:
                logger.info(f"Job {envelope.job_id} is no longer retryable, dropping envelope")
                continue
            await self.redis.lpush(self.pending_key, raw)
            moved += 1
        if moved:
            logger.info(f"Moved {moved} job(s) from retry back to pending")
        return moved

    async def _settle_unrecorded_failure(self, envelope: QueueEnvelope) -> bool:
        """Write FAILED for a retry envelope whose job record still says PROCESSING."""
        job = await self.store.get_job(envelope.job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return False
        logger.warning(f"Job {envelope.job_id} was never marked failed, settling it before retry")
        return await self.store.mark_failed(envelope.job_id, envelope.last_error or "Attempt failed") is not None

    async def cleanup_stuck_jobs(self) -> list[str]:
        """Fail envelopes that have sat in processing past the stuck threshold.

        The job record is written first; an envelope whose record cannot be
        updated stays in processing for the next sweep.
        """
        cutoff = now_ms() - self.config.stuck_job_minutes * 60 * 1000
        started = await self.redis.hgetall(self.started_key)
        candidates = []
        for raw in await self.redis.lrange(self.processing_key, 0, -1):
            try:
                envelope = QueueEnvelope.from_wire(raw)
            except ValidationError:
                continue
            started_at = started.get(envelope.job_id)
            started_at = int(started_at) if started_at else (envelope.last_attempt or envelope.created_at)
            if started_at < cutoff and envelope.job_id not in candidates:
                candidates.append(envelope.job_id)

        stuck = []
        for job_id in candidates:
            logger.warning(f"Job {job_id} stuck in processing, failing it")
            try:
                await self.store.mark_failed(job_id, STUCK_JOB_ERROR)
            except PersistenceError as e:
                logger.error(f"Could not mark stuck job {job_id} as failed, leaving it in processing: {e}")
                continue
            await self.fail(job_id, STUCK_JOB_ERROR)
            stuck.append(job_id)
        return stuck

    async def get_stats(self) -> QueueStats:
        return QueueStats(
            pending=await self.redis.llen(self.pending_key),
            processing=await self.redis.llen(self.processing_key),
            retrying=await self.redis.zcard(self.retry_key),
        )

    async def _processing_entries(self, job_id: str) -> list[str]:
        entries = []
        for raw in await self.redis.lrange(self.processing_key, 0, -1):
            try:
                if QueueEnvelope.from_wire(raw).job_id == job_id:
                    entries.append(raw)
            except ValidationError:
                continue
        return entries

    async def _find_processing(self, job_id: str) -> Optional[str]:
        entries = await self._processing_entries(job_id)
        return entries[0] if entries else None

    async def _mark_started(self, job_id: str) -> None:
        # A duplicate copy must not reset the claim time of the copy being worked on
        if len(await self._processing_entries(job_id)) > 1:
            await self.redis.hsetnx(self.started_key, job_id, now_ms())
        else:
            await self.redis.hset(self.started_key, job_id, now_ms())

    async def _release(self, job_id: str, raw, *, to_pending: bool = False,
                       retry: Optional[tuple[str, int]] = None) -> None:
        """Remove `raw` from processing, handing it on in the same transaction.

        `to_pending` pushes it back to the consuming end of pending; `retry`
        is a (wire, ready_at_ms) pair for the retry set.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key, 1, raw)
            if to_pending:
                pipe.rpush(self.pending_key, raw)
            if retry is not None:
                pipe.zadd(self.retry_key, {retry[0]: retry[1]})
            await pipe.execute()
        if await self._find_processing(job_id) is None:
            await self.redis.hdel(self.started_key, job_id)
