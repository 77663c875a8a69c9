"""Auto-settlement sweep.

Completed jobs that the poster never finishes are paid out automatically once
the grace period since ``completed_at`` has elapsed. A single async task wakes
every ``settlement_sweep_interval_seconds``, selects a batch of eligible jobs
and runs the same payout path as a manual finish for each of them, one session
per job, so one job's failure never stops the rest of the pass.

When several replicas run the sweep, a short Redis lock (SET NX EX) keeps them
from scanning at the same time. The lock only saves work: the payout path is
already safe against concurrent callers.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.config import settings
from marketplace.errors import GatewayFailure, MarketplaceError
from marketplace.models.job import Job, JobStatus, JobTimeline
from marketplace.services.job import JobLifecycle
from marketplace.services.job_store import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    settled: list[uuid.UUID] = field(default_factory=list)
    failed: list[uuid.UUID] = field(default_factory=list)
    skipped: list[uuid.UUID] = field(default_factory=list)
    locked_out: bool = False

    @property
    def examined(self) -> int:
        return len(self.settled) + len(self.failed) + len(self.skipped)


async def find_due_jobs(
    db: AsyncSession, cutoff: datetime, batch_size: int
) -> list[uuid.UUID]:
    """Completed, unpaid, active jobs whose completion is older than ``cutoff``."""
    result = await db.execute(
        select(Job.id)
        .join(JobTimeline, JobTimeline.job_id == Job.id)
        .where(
            Job.job_status == JobStatus.COMPLETED,
            Job.is_active.is_(True),
            JobTimeline.completed_at.is_not(None),
            JobTimeline.completed_at <= cutoff,
            JobTimeline.paid_at.is_(None),
        )
        .order_by(JobTimeline.completed_at)
        .limit(batch_size)
    )
    return list(result.scalars().all())


async def _settle_job(
    session_factory: async_sessionmaker[AsyncSession],
    lifecycle: JobLifecycle,
    job_id: uuid.UUID,
    report: SweepReport,
) -> None:
    try:
        async with session_factory() as db:
            job = await lifecycle.settle_payout(db, job_id, actor_id=None)
    except GatewayFailure as e:
        logger.warning("Auto-settlement of job %s failed, will retry next pass: %s", job_id, e.detail)
        report.failed.append(job_id)
        return
    except MarketplaceError as e:
        logger.warning("Auto-settlement of job %s skipped (%s): %s", job_id, e.kind, e.detail)
        report.skipped.append(job_id)
        return
    except Exception:
        logger.exception("Auto-settlement of job %s failed unexpectedly", job_id)
        report.failed.append(job_id)
        return

    if job.job_status == JobStatus.PAID:
        report.settled.append(job_id)
    else:
        report.skipped.append(job_id)


async def _acquire_lock(redis: aioredis.Redis, key: str, ttl_seconds: int) -> bool:
    try:
        return bool(await redis.set(key, "1", nx=True, ex=ttl_seconds))
    except aioredis.RedisError:
        logger.warning("Settlement lock unavailable, sweeping without it", exc_info=True)
        return True


async def _release_lock(redis: aioredis.Redis, key: str) -> None:
    try:
        await redis.delete(key)
    except aioredis.RedisError:
        logger.warning("Failed to release settlement lock %s", key, exc_info=True)


async def sweep_once(
    session_factory: async_sessionmaker[AsyncSession],
    lifecycle: JobLifecycle,
    *,
    now: datetime | None = None,
    grace_period_seconds: int = 24 * 60 * 60,
    batch_size: int = 100,
    redis: aioredis.Redis | None = None,
    lock_key: str = "settlement:sweep:lock",
    lock_ttl_seconds: int = 60,
) -> SweepReport:
    """Run one pass over due jobs and report what happened to each."""
    report = SweepReport()
    if redis is not None and not await _acquire_lock(redis, lock_key, lock_ttl_seconds):
        logger.debug("Settlement sweep already running elsewhere, skipping pass")
        report.locked_out = True
        return report

    try:
        cutoff = (now or utcnow()) - timedelta(seconds=grace_period_seconds)
        async with session_factory() as db:
            due = await find_due_jobs(db, cutoff, batch_size)

        for job_id in due:
            await _settle_job(session_factory, lifecycle, job_id, report)
    finally:
        if redis is not None:
            await _release_lock(redis, lock_key)

    if report.examined:
        logger.info(
            "Settlement sweep: %d settled, %d failed, %d skipped",
            len(report.settled), len(report.failed), len(report.skipped),
        )
    return report


async def run_settlement_sweep(lifecycle: JobLifecycle) -> None:
    """Sweep forever on a fixed interval until cancelled."""
    from marketplace.database import async_session_factory
    from marketplace.redis import get_redis_client

    redis = get_redis_client()
    interval = settings.settlement_sweep_interval_seconds

    while True:
        try:
            await sweep_once(
                async_session_factory,
                lifecycle,
                grace_period_seconds=settings.settlement_grace_period_seconds,
                batch_size=settings.settlement_batch_size,
                redis=redis,
                lock_key=settings.settlement_lock_key,
                lock_ttl_seconds=max(interval, 1),
            )
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Settlement sweep shutting down")
            break
        except Exception:
            logger.exception("Settlement sweep error, retrying in %ds", interval)
            await asyncio.sleep(interval)

    await redis.aclose()
