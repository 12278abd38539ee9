"""FastAPI dependencies: services wired on app.state by the lifespan."""
from fastapi import Header, HTTPException, Request

from analysis_jobs.services.activity import ActivityTracker
from analysis_jobs.services.error_tracker import ErrorTracker
from analysis_jobs.services.job_store import JobStore
from analysis_jobs.services.scheduler import JobScheduler


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


def get_error_tracker(request: Request) -> ErrorTracker:
    return request.app.state.error_tracker


def get_activity(request: Request) -> ActivityTracker:
    return request.app.state.activity


async def get_current_user(x_user_id: str = Header(default="")) -> str:
    """Owner identity, supplied by the auth proxy in front of the API."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id
