"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from analysis_jobs.config import settings
from analysis_jobs.database import create_engine, create_session_factory
from analysis_jobs.models import Base
from analysis_jobs.services.activity import ActivityTracker
from analysis_jobs.services.analysis import AnalysisExecutor
from analysis_jobs.services.error_tracker import ErrorTracker
from analysis_jobs.services.job_store import JobStore
from analysis_jobs.services.scheduler import WorkerConfig, create_scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(levelname)s %(asctime)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, wire services, start the configured scheduler."""
    engine = create_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = create_session_factory(engine)
    store = JobStore(session_factory)
    error_tracker = ErrorTracker(session_factory, dedup_window_hours=settings.ERROR_DEDUP_WINDOW_HOURS)
    activity = ActivityTracker(session_factory)

    try:
        await error_tracker.cleanup_old_errors(settings.ERROR_RETENTION_DAYS)
    except Exception as e:
        logger.warning(f"Error log cleanup skipped: {e}")

    redis_client = None
    if settings.SCHEDULER_MODE == "redis":
        from redis import asyncio as aioredis
        redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)

    scheduler = create_scheduler(
        settings.SCHEDULER_MODE,
        store=store,
        executor=AnalysisExecutor(provider_timeout=settings.PROVIDER_TIMEOUT_SECONDS),
        error_tracker=error_tracker,
        activity=activity,
        config=WorkerConfig.from_settings(settings),
        redis=redis_client,
    )

    app.state.store = store
    app.state.error_tracker = error_tracker
    app.state.activity = activity
    app.state.scheduler = scheduler

    logger.info(f"Starting job scheduler (mode={scheduler.mode})")
    await scheduler.start()

    yield

    # Cleanup
    await scheduler.stop()
    if redis_client is not None:
        await redis_client.aclose()
    await engine.dispose()


app = FastAPI(
    title="Conversation Analysis Jobs API",
    version="1.0.0",
    description="Background AI analysis of uploaded conversations.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check(request: Request):
    """Verify database connectivity and report the scheduler state."""
    store: JobStore = request.app.state.store
    database_ok = await store.ping()
    try:
        scheduler = await request.app.state.scheduler.status()
    except Exception as e:
        logger.error(f"Scheduler status failed: {e}")
        scheduler = {"mode": settings.SCHEDULER_MODE, "error": str(e)}
    return {
        "status": "ok" if database_ok else "error",
        "database": "connected" if database_ok else "unavailable",
        "scheduler": scheduler,
    }


# Register routers
from analysis_jobs.routes.jobs import router as jobs_router
from analysis_jobs.routes.errors import router as errors_router
app.include_router(jobs_router)
app.include_router(errors_router)
