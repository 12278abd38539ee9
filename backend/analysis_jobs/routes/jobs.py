"""Jobs API - submit, list, check status, cancel and retry analysis jobs."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from analysis_jobs.dependencies import (
    get_activity,
    get_current_user,
    get_scheduler,
    get_store,
)
from analysis_jobs.errors import NotFoundError, PersistenceError
from analysis_jobs.models.job import JobStatus
from analysis_jobs.schemas.job import JobCreate, JobCreated, JobStatusResponse, JobSummary
from analysis_jobs.services.activity import ActivityTracker
from analysis_jobs.services.job_store import JobStore
from analysis_jobs.services.scheduler import JobScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _unavailable(e: PersistenceError) -> HTTPException:
    logger.error(f"Job store error: {e}")
    return HTTPException(status_code=503, detail="Job store unavailable, please try again shortly")


@router.post("", response_model=JobCreated, status_code=201)
async def submit_job(
    body: JobCreate,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    scheduler: JobScheduler = Depends(get_scheduler),
    activity: ActivityTracker = Depends(get_activity),
):
    """Record a new analysis job and hand it to the scheduler."""
    try:
        job_id = await store.create_job(
            owner_id=user_id,
            template_id=body.template_id,
            model_id=body.model_id,
            provider=body.provider,
            file_name=body.file_name,
            file_content=body.file_content,
            api_key=body.api_key,
        )
    except PersistenceError as e:
        raise _unavailable(e)

    try:
        await scheduler.submit(job_id)
    except Exception as e:
        # The record is durable; a poller or startup sync will still find it
        logger.error(f"Could not submit job {job_id} to the scheduler: {e}")

    await activity.track_activity(
        user_id=user_id,
        action="analysis_job_created",
        category="analysis",
        metadata={"jobId": job_id, "fileName": body.file_name, "provider": body.provider},
    )
    return JobCreated(job_id=job_id, status=JobStatus.PENDING)


@router.get("", response_model=list[JobSummary])
async def list_jobs(
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_store),
):
    """Most recent jobs of the caller, newest first."""
    try:
        return await store.list_jobs(user_id, limit=limit)
    except PersistenceError as e:
        raise _unavailable(e)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_store),
):
    """Status, progress and (when complete) result of one job."""
    try:
        return await store.get_job_status(job_id, user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise _unavailable(e)


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    activity: ActivityTracker = Depends(get_activity),
):
    """Cancel a pending or processing job."""
    try:
        await store.cancel_job(job_id, user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise _unavailable(e)

    await activity.track_activity(
        user_id=user_id,
        action="analysis_job_cancelled",
        category="analysis",
        metadata={"jobId": job_id},
    )
    return {"id": job_id, "status": JobStatus.CANCELLED}


@router.post("/{job_id}/retry")
async def retry_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_store),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    """Put a failed job back in the queue with a fresh retry budget."""
    try:
        # Ownership check first so other users' jobs stay invisible
        status = await store.get_job_status(job_id, user_id)
        if status["status"] != JobStatus.FAILED:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot retry job in '{status['status']}' state",
            )
        await store.retry_job(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise _unavailable(e)

    try:
        await scheduler.submit(job_id)
    except Exception as e:
        logger.error(f"Could not submit job {job_id} to the scheduler: {e}")
    return {"id": job_id, "status": JobStatus.PENDING}
