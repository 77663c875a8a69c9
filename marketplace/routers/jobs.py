"""Job lifecycle endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import get_current_user_id
from marketplace.database import get_db
from marketplace.models.job import Job, JobStatus
from marketplace.schemas.job import (
    ExtraTimeDecision,
    ExtraTimeRequest,
    JobCreate,
    JobResponse,
    JobUpdate,
    StatusChangeResponse,
    TimelineResponse,
)
from marketplace.services import job_store
from marketplace.services.job import JobLifecycle, get_lifecycle

router = APIRouter(prefix="/jobs", tags=["jobs"])


async def _render(db: AsyncSession, job: Job) -> JobResponse:
    response = JobResponse.model_validate(job)
    response.has_active_offers = await job_store.has_active_offers(db, job)
    return response


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    data: JobCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Poster publishes a job."""
    job = await lifecycle.create_job(db, user_id, **data.model_dump())
    return JobResponse.model_validate(job)


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    status: JobStatus | None = None,
    poster_id: uuid.UUID | None = None,
    helper_id: uuid.UUID | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> list[JobResponse]:
    jobs = await lifecycle.list_jobs(
        db, status=status, poster_id=poster_id, helper_id=helper_id, limit=limit, offset=offset
    )
    return [await _render(db, job) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    view = await lifecycle.get_job_view(db, job_id)
    response = JobResponse.model_validate(view.job)
    response.has_active_offers = view.has_active_offers
    return response


@router.patch("/{job_id}", response_model=JobResponse)
async def update_job(
    job_id: uuid.UUID,
    data: JobUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Poster edits an open job. Refused once an offer has been accepted."""
    job = await lifecycle.update_job(db, job_id, user_id, data.model_dump(exclude_unset=True))
    return await _render(db, job)


@router.get("/{job_id}/timeline", response_model=TimelineResponse)
async def get_timeline(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> TimelineResponse:
    timeline = await lifecycle.get_timeline(db, job_id)
    return TimelineResponse.model_validate(timeline)


@router.get("/{job_id}/history", response_model=list[StatusChangeResponse])
async def get_status_history(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> list[StatusChangeResponse]:
    history = await lifecycle.get_status_history(db, job_id)
    return [StatusChangeResponse.model_validate(h) for h in history]


@router.post("/{job_id}/accept", response_model=JobResponse)
async def direct_accept(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Helper takes the job at the posted price."""
    job = await lifecycle.offers.direct_accept(db, job_id, user_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/start", response_model=JobResponse)
async def start_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Assigned helper begins work."""
    job = await lifecycle.start(db, job_id, user_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/complete", response_model=JobResponse)
async def complete_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Assigned helper marks the work done."""
    job = await lifecycle.complete(db, job_id, user_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/finish", response_model=JobResponse)
async def finish_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Poster releases payment. Safe to retry."""
    job = await lifecycle.finish(db, job_id, user_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Poster cancels a posted or confirmed job; any hold is refunded first."""
    job = await lifecycle.cancel(db, job_id, user_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/extra-time", response_model=JobResponse)
async def request_extra_time(
    job_id: uuid.UUID,
    data: ExtraTimeRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    job = await lifecycle.request_extra_time(db, job_id, user_id, data.hours, data.reason)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/extra-time/decision", response_model=JobResponse)
async def decide_extra_time(
    job_id: uuid.UUID,
    data: ExtraTimeDecision,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Poster approves (and pays for) or declines the pending extra time."""
    job = await lifecycle.decide_extra_time(db, job_id, user_id, data.approved)
    return JobResponse.model_validate(job)
