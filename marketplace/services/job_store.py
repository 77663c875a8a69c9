"""Job record store: reads, compare-and-swap transitions, timeline and status log.

Every status change goes through ``transition``, which issues

    UPDATE jobs SET job_status = :target, ... WHERE id = :id AND job_status = :expected

and maps zero affected rows to ``Conflict``. Two racing callers can both pass
their in-memory status checks, but only one of them can win the UPDATE.
Nothing here commits; the calling engine owns the transaction.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import Conflict, InvalidState, NotFound
from marketplace.models.counter_offer import CounterOffer
from marketplace.models.job import (
    STATUS_MILESTONES,
    VALID_TRANSITIONS,
    Job,
    JobStatus,
    JobStatusHistory,
    JobTimeline,
    PaymentType,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


async def get_job(db: AsyncSession, job_id: uuid.UUID, *, for_update: bool = False) -> Job:
    stmt = select(Job).where(Job.id == job_id)
    if for_update:
        # reload attributes under the lock; the identity map may hold a stale copy
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFound("Job not found")
    return job


async def get_timeline(db: AsyncSession, job_id: uuid.UUID) -> JobTimeline:
    result = await db.execute(select(JobTimeline).where(JobTimeline.job_id == job_id))
    timeline = result.scalar_one_or_none()
    if timeline is None:
        raise NotFound("Job timeline not found")
    return timeline


def stamp(timeline: JobTimeline, milestone: str, when: datetime) -> bool:
    """Set a milestone if it has not been reached yet. Returns True if set."""
    if getattr(timeline, milestone) is not None:
        return False
    setattr(timeline, milestone, when)
    return True


def log_status_change(
    db: AsyncSession,
    job_id: uuid.UUID,
    from_status: JobStatus | None,
    to_status: JobStatus,
    actor_id: uuid.UUID | None,
    when: datetime,
) -> None:
    db.add(JobStatusHistory(
        id=uuid.uuid4(),
        job_id=job_id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        created_at=when,
    ))


def require_status(job: Job, allowed: JobStatus | tuple[JobStatus, ...], action: str) -> None:
    if isinstance(allowed, JobStatus):
        allowed = (allowed,)
    if job.job_status not in allowed:
        raise InvalidState(
            job.job_status.value,
            tuple(s.value for s in allowed) if len(allowed) > 1 else allowed[0].value,
            action,
        )


async def create_job(
    db: AsyncSession,
    *,
    poster_id: uuid.UUID,
    title: str,
    price: Decimal,
    payment_type: PaymentType,
    when: datetime,
    description: str | None = None,
    hourly_rate: Decimal | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
) -> Job:
    job = Job(
        id=uuid.uuid4(),
        title=title,
        description=description,
        price=price,
        payment_type=payment_type,
        hourly_rate=hourly_rate if payment_type == PaymentType.HOURLY else None,
        poster_id=poster_id,
        job_status=JobStatus.POSTED,
        is_active=True,
        start_time=start_time,
        end_time=end_time,
        extra_time_approved=False,
        total_approved_hours=Decimal("0"),
        created_at=when,
        updated_at=when,
    )
    db.add(job)
    await db.flush()
    db.add(JobTimeline(job_id=job.id, posted_at=when))
    log_status_change(db, job.id, None, JobStatus.POSTED, poster_id, when)
    return job


async def compare_and_set(
    db: AsyncSession,
    job_id: uuid.UUID,
    expected: JobStatus,
    values: dict,
    *criteria,
) -> None:
    """Conditional UPDATE on the job row; Conflict if the row moved underneath us."""
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.job_status == expected, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        raise Conflict(f"Job {job_id} was modified concurrently (expected {expected.value})")


async def transition(
    db: AsyncSession,
    job: Job,
    target: JobStatus,
    *,
    actor_id: uuid.UUID | None,
    when: datetime,
    values: dict | None = None,
    criteria: tuple = (),
) -> None:
    """Move a job to ``target`` from its currently loaded status.

    Stamps the matching timeline milestone and appends to the status log in
    the same transaction.
    """
    current = job.job_status
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidState(current.value, tuple(s.value for s in _sources_of(target)), f"become {target.value}")

    await compare_and_set(db, job.id, current, {"job_status": target, **(values or {})}, *criteria)

    milestone = STATUS_MILESTONES.get(target)
    if milestone is not None:
        timeline = await get_timeline(db, job.id)
        stamp(timeline, milestone, when)
    log_status_change(db, job.id, current, target, actor_id, when)


def _sources_of(target: JobStatus) -> list[JobStatus]:
    return [s for s, targets in VALID_TRANSITIONS.items() if target in targets]


async def has_active_offers(db: AsyncSession, job: Job) -> bool:
    """Derived "counter_offer" status: a posted job with unanswered offers."""
    if job.job_status != JobStatus.POSTED or job.accepted_counter_offer_id is not None:
        return False
    result = await db.execute(
        select(func.count()).select_from(CounterOffer).where(CounterOffer.job_id == job.id)
    )
    return result.scalar_one() > 0
