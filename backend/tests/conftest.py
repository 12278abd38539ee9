"""Pytest configuration and shared fixtures for the analysis job tests.

Database fixtures run against a throwaway SQLite file through aiosqlite so
every test starts from empty tables. Broker fixtures use fakeredis.

Example:
    >>> async def test_claim(store, create_job):
    ...     job_id = await create_job()
    ...     assert await store.mark_processing(job_id)
"""

import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from analysis_jobs.database import create_engine, create_session_factory
from analysis_jobs.errors import PersistenceError
from analysis_jobs.models import Base
from analysis_jobs.services.activity import ActivityTracker
from analysis_jobs.services.analysis import AnalysisExecutor
from analysis_jobs.services.error_tracker import ErrorTracker
from analysis_jobs.services.job_store import JobStore
from analysis_jobs.services.scheduler import WorkerConfig


API_KEY = "sk-test-0123456789abcdef"

ANALYSIS_RESULT = {
    "detectedLanguage": "English",
    "overallSummary": "A friendly catch-up between two old friends.",
    "insights": [
        {"type": "text", "title": "Warm tone", "content": "Both sides are supportive."},
    ],
    "topics": ["weekend plans"],
}

ANALYSIS_RESPONSE_TEXT = json.dumps(ANALYSIS_RESULT)


def flaky(method, failures: int = 1):
    """Wrap a store method so its first `failures` calls raise PersistenceError."""
    calls = {"n": 0}

    async def wrapper(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise PersistenceError("Job store unavailable: connection reset")
        return await method(*args, **kwargs)

    return wrapper


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database with all tables."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def error_tracker(session_factory) -> ErrorTracker:
    return ErrorTracker(session_factory)


@pytest.fixture
def activity(session_factory) -> ActivityTracker:
    return ActivityTracker(session_factory)


@pytest.fixture
def create_job(store):
    """Factory creating a PENDING job with sensible defaults.

    Example:
        >>> job_id = await create_job(provider="anthropic")
    """
    async def _create(owner_id: str = "user-1", **overrides) -> str:
        fields = {
            "template_id": "general-analysis",
            "model_id": "gpt-4o-mini",
            "provider": "openai",
            "file_name": "chat.txt",
            "file_content": "Alice: hi!\nBob: hey, long time no see",
            "api_key": API_KEY,
        }
        fields.update(overrides)
        return await store.create_job(owner_id=owner_id, **fields)

    return _create


# ============================================================================
# Worker Fixtures
# ============================================================================

@pytest.fixture
def worker_config() -> WorkerConfig:
    """Worker settings with the waits shrunk for tests."""
    return WorkerConfig(
        max_concurrent_jobs=3,
        retry_attempts=3,
        retry_delay_ms=0,
        poll_interval=0.01,
        dequeue_timeout=1,
        maintenance_interval=0.01,
        stuck_job_minutes=30,
        db_unavailable_backoff=0.01,
        loop_error_backoff=0.01,
        failure_write_backoff=0,
    )


@pytest.fixture
def invoke() -> AsyncMock:
    """Stand-in for the provider call; returns a parsed analysis by default."""
    return AsyncMock(return_value=dict(ANALYSIS_RESULT))


@pytest.fixture
def executor(invoke) -> AnalysisExecutor:
    return AnalysisExecutor(invoke=invoke)


@pytest_asyncio.fixture
async def redis_client():
    """In-memory Redis speaking the asyncio client API."""
    import fakeredis

    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()
