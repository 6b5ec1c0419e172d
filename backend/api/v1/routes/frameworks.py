"""Framework usage endpoints.

POST /api/v1/frameworks/jobs  - Request a recomputation for a user
GET  /api/v1/frameworks/users - Stored framework usage for a user
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from api.deps import get_dispatcher, get_store
from app.logging_config import get_logger
from services.job_dispatcher import JobDispatcher
from services.models import Job
from services.stats_store import FrameworkUsageStore

logger = get_logger(__name__)
router = APIRouter()


class JobRequest(BaseModel):
    """Recomputation request, sent by the login/registration flow."""

    username: str = Field(
        ..., min_length=1, max_length=39, pattern=r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$"
    )
    email: str | None = Field(None, max_length=255)
    credential: str = Field(..., min_length=1, repr=False)


class JobResponse(BaseModel):
    outcome: str


class FrameworkUsageResponse(BaseModel):
    username: str
    framework_usage: dict[str, int]
    last_updated: str | None


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    request: JobRequest,
    dispatcher: JobDispatcher = Depends(get_dispatcher),
) -> JobResponse:
    """Enqueue a recomputation unless the stored usage is still fresh."""
    job = Job(username=request.username, email=request.email, credential=request.credential)
    outcome = await dispatcher.submit(job)
    return JobResponse(outcome=outcome.value)


@router.get("/users", response_model=FrameworkUsageResponse)
async def get_framework_usage(
    username: str = Query(..., min_length=1, max_length=100),
    store: FrameworkUsageStore = Depends(get_store),
) -> FrameworkUsageResponse:
    usage = await store.get_stats(username)
    data = usage.to_dict()
    return FrameworkUsageResponse(
        username=username,
        framework_usage=data["framework_usage"],
        last_updated=data["last_updated"],
    )
