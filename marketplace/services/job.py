"""Job lifecycle business logic.

State machine (poster P, helper H):

    posted --accept/direct accept--> confirmed --start (H)--> ongoing
    ongoing --complete (H)--> completed --finish (P) / sweep--> paid
    posted, confirmed --cancel (P)--> cancelled

Every transition is a compare-and-swap on ``job_status`` (see job_store).
Money moves through the payment gateway with deterministic idempotency keys,
and the job only changes state after the gateway call succeeded.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import BadRequest, Conflict, GatewayFailure, Unauthorized
from marketplace.models.counter_offer import CounterOffer
from marketplace.models.job import Job, JobStatus, JobStatusHistory, JobTimeline, PaymentType
from marketplace.models.payment import PaymentTransaction, TransactionType
from marketplace.services import job_store, ledger
from marketplace.services.commission import CENT, split_commission
from marketplace.services.counter_offer import CounterOfferEngine
from marketplace.services.gateway import (
    GatewayError,
    PaymentGateway,
    capture_key,
    extra_time_key,
    get_payment_gateway,
    payout_key,
    refund_key,
)
from marketplace.services.notifications import Notifier, dispatch, get_notifier
from marketplace.services.payment_profiles import require_payer, require_payout_destination

logger = logging.getLogger(__name__)

# Fields a poster may edit while the job is still open
EDITABLE_FIELDS = ("title", "description", "price", "hourly_rate", "start_time", "end_time")
REQUIRED_FIELDS = ("title", "price")


@dataclass
class JobView:
    job: Job
    has_active_offers: bool


def _hours_between(start: datetime, end: datetime) -> Decimal:
    seconds = Decimal(str((end - start).total_seconds()))
    return (seconds / Decimal("3600")).quantize(CENT, rounding=ROUND_HALF_UP)


class JobLifecycle:
    """Owns the job state machine and the money movement bound to it."""

    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: Notifier,
        *,
        fee_rate: Decimal,
        currency: str = "usd",
        clock: Callable[[], datetime] = job_store.utcnow,
        extra_time_min_hours: Decimal = Decimal("0.5"),
        extra_time_max_hours: Decimal = Decimal("8"),
    ) -> None:
        if not Decimal("0") <= fee_rate < Decimal("1"):
            raise ValueError(f"fee_rate must be in [0, 1), got {fee_rate}")
        self.gateway = gateway
        self.notifier = notifier
        self.fee_rate = fee_rate
        self.currency = currency
        self.clock = clock
        self.extra_time_min_hours = extra_time_min_hours
        self.extra_time_max_hours = extra_time_max_hours
        self.offers = CounterOfferEngine(gateway, notifier, currency=currency, clock=clock)

    # --- Creation and reads ---

    async def create_job(
        self,
        db: AsyncSession,
        poster_id: uuid.UUID,
        *,
        title: str,
        price: Decimal,
        payment_type: PaymentType = PaymentType.FIXED,
        description: str | None = None,
        hourly_rate: Decimal | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> Job:
        """Poster publishes a new job. Creates its timeline with ``posted_at``."""
        if price <= 0:
            raise BadRequest("Price must be positive")
        if payment_type == PaymentType.HOURLY and (hourly_rate is None or hourly_rate <= 0):
            raise BadRequest("Hourly jobs require a positive hourly_rate")
        start_time = job_store.ensure_utc(start_time)
        end_time = job_store.ensure_utc(end_time)
        if start_time and end_time and end_time <= start_time:
            raise BadRequest("end_time must be after start_time")

        job = await job_store.create_job(
            db,
            poster_id=poster_id,
            title=title,
            price=price,
            payment_type=payment_type,
            when=self.clock(),
            description=description,
            hourly_rate=hourly_rate,
            start_time=start_time,
            end_time=end_time,
        )
        await db.commit()
        await db.refresh(job)
        logger.info("Job %s posted by %s at %s (%s)", job.id, poster_id, price, payment_type.value)
        return job

    async def update_job(
        self, db: AsyncSession, job_id: uuid.UUID, poster_id: uuid.UUID, changes: dict
    ) -> Job:
        job = await job_store.get_job(db, job_id)
        if poster_id != job.poster_id:
            raise Unauthorized("Only the job owner can edit this job")
        job_store.require_status(job, JobStatus.POSTED, "be edited")
        if job.accepted_counter_offer_id is not None:
            raise Conflict("Job terms are locked once an offer has been accepted")

        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise BadRequest(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        for name in REQUIRED_FIELDS:
            if name in changes and changes[name] is None:
                raise BadRequest(f"{name} cannot be cleared")
        if "price" in changes and changes["price"] <= 0:
            raise BadRequest("Price must be positive")
        if "hourly_rate" in changes:
            if job.payment_type != PaymentType.HOURLY:
                raise BadRequest("hourly_rate only applies to hourly jobs")
            if changes["hourly_rate"] is None or changes["hourly_rate"] <= 0:
                raise BadRequest("Hourly jobs require a positive hourly_rate")
        for name in ("start_time", "end_time"):
            if name in changes:
                changes[name] = job_store.ensure_utc(changes[name])
        start = changes.get("start_time", job.start_time)
        end = changes.get("end_time", job.end_time)
        if start and end and job_store.ensure_utc(end) <= job_store.ensure_utc(start):
            raise BadRequest("end_time must be after start_time")
        if not changes:
            return job

        await job_store.compare_and_set(
            db, job.id, JobStatus.POSTED, changes, Job.accepted_counter_offer_id.is_(None)
        )
        await db.commit()
        await db.refresh(job)
        return job

    async def get_job_view(self, db: AsyncSession, job_id: uuid.UUID) -> JobView:
        job = await job_store.get_job(db, job_id)
        return JobView(job=job, has_active_offers=await job_store.has_active_offers(db, job))

    async def get_timeline(self, db: AsyncSession, job_id: uuid.UUID) -> JobTimeline:
        await job_store.get_job(db, job_id)
        return await job_store.get_timeline(db, job_id)

    async def get_status_history(self, db: AsyncSession, job_id: uuid.UUID) -> list[JobStatusHistory]:
        await job_store.get_job(db, job_id)
        result = await db.execute(
            select(JobStatusHistory)
            .where(JobStatusHistory.job_id == job_id)
            .order_by(JobStatusHistory.created_at)
        )
        return list(result.scalars().all())

    async def list_transactions(
        self, db: AsyncSession, job_id: uuid.UUID, viewer_id: uuid.UUID
    ) -> list[PaymentTransaction]:
        job = await job_store.get_job(db, job_id)
        if viewer_id not in (job.poster_id, job.assigned_helper_id):
            raise Unauthorized("Not a party to this job")
        return await ledger.list_for_job(db, job_id)

    async def list_jobs(
        self,
        db: AsyncSession,
        *,
        status: JobStatus | None = None,
        poster_id: uuid.UUID | None = None,
        helper_id: uuid.UUID | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Job]:
        query = select(Job).where(Job.is_active.is_(True))
        if status is not None:
            query = query.where(Job.job_status == status)
        if poster_id is not None:
            query = query.where(Job.poster_id == poster_id)
        if helper_id is not None:
            query = query.where(Job.assigned_helper_id == helper_id)
        query = query.order_by(Job.created_at.desc()).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    # --- Fulfillment ---

    async def start(self, db: AsyncSession, job_id: uuid.UUID, helper_id: uuid.UUID) -> Job:
        job = await job_store.get_job(db, job_id)
        if helper_id != job.assigned_helper_id:
            raise Unauthorized("Only the assigned helper can start this job")
        job_store.require_status(job, JobStatus.CONFIRMED, "start")

        now = self.clock()
        await job_store.transition(
            db, job, JobStatus.ONGOING, actor_id=helper_id, when=now,
            values={"actual_start_time": now},
        )
        await db.commit()
        await db.refresh(job)

        await dispatch(self.notifier, "job.started", job.id, job.poster_id)
        return job

    async def complete(self, db: AsyncSession, job_id: uuid.UUID, helper_id: uuid.UUID) -> Job:
        """Helper marks the work done.

        Hourly jobs are billed from the recorded start to now plus any
        approved extra hours. Completing an already completed or paid job
        returns it unchanged.
        """
        job = await job_store.get_job(db, job_id)
        if helper_id != job.assigned_helper_id:
            raise Unauthorized("Only the assigned helper can complete this job")
        if job.job_status in (JobStatus.COMPLETED, JobStatus.PAID):
            return job
        job_store.require_status(job, JobStatus.ONGOING, "complete")

        now = self.clock()
        values: dict = {"actual_end_time": now}
        if job.payment_type == PaymentType.HOURLY:
            started = job_store.ensure_utc(job.actual_start_time) or now
            actual_hours = _hours_between(started, now)
            billable = actual_hours + (job.total_approved_hours or Decimal("0"))
            values["actual_hours"] = actual_hours
            values["final_price"] = ((job.hourly_rate or Decimal("0")) * billable).quantize(CENT)
        else:
            values["final_price"] = job.final_price if job.final_price is not None else job.price

        await job_store.transition(
            db, job, JobStatus.COMPLETED, actor_id=helper_id, when=now, values=values
        )
        await db.commit()
        await db.refresh(job)
        logger.info("Job %s completed, final price %s", job.id, job.final_price)

        await dispatch(self.notifier, "job.completed", job.id, job.poster_id, {
            "final_price": str(job.final_price),
        })
        return job

    # --- Payout ---

    async def finish(self, db: AsyncSession, job_id: uuid.UUID, poster_id: uuid.UUID) -> Job:
        """Poster releases payment for a completed job."""
        job = await job_store.get_job(db, job_id)
        if poster_id != job.poster_id:
            raise Unauthorized("Only the job owner can finish this job")
        return await self.settle_payout(db, job_id, actor_id=poster_id)

    async def settle_payout(
        self, db: AsyncSession, job_id: uuid.UUID, actor_id: uuid.UUID | None = None
    ) -> Job:
        """Pay the helper for a completed job. Shared by ``finish`` and the sweep.

        Safe to call repeatedly: a paid job is returned without touching the
        gateway, and the capture and transfer keys are stable per job, so a
        retry after a timeout cannot pay twice.
        """
        job = await job_store.get_job(db, job_id, for_update=True)
        timeline = await job_store.get_timeline(db, job_id)
        if job.job_status == JobStatus.PAID or timeline.paid_at is not None:
            await db.commit()
            return job
        job_store.require_status(job, JobStatus.COMPLETED, "be paid out")

        destination = await require_payout_destination(db, job.assigned_helper_id)
        total = job.final_price if job.final_price is not None else job.price
        split = split_commission(total, self.fee_rate)

        captured = None
        try:
            if job.payment_intent_id:
                captured = await self.gateway.capture_hold(
                    job.payment_intent_id, capture_key(job.payment_intent_id)
                )
            transfer_id = await self.gateway.transfer(
                destination,
                split.payee_amount,
                payout_key(job.id, split.payee_cents),
                metadata={"job_id": str(job.id)},
            )
        except GatewayError as e:
            await db.rollback()
            logger.warning("Payout for job %s failed (retryable=%s): %s", job_id, e.retryable, e)
            raise GatewayFailure(f"Payout failed: {e}", retryable=e.retryable)

        try:
            await job_store.transition(db, job, JobStatus.PAID, actor_id=actor_id, when=self.clock())
        except Conflict:
            # a racing caller paid first with the same transfer key
            await db.rollback()
            job = await job_store.get_job(db, job_id)
            if job.job_status == JobStatus.PAID:
                return job
            raise
        await db.commit()
        logger.info(
            "Job %s paid: %s to helper %s, %s commission (transfer %s)",
            job_id, split.payee_amount, job.assigned_helper_id, split.platform_amount, transfer_id,
        )

        entries = []
        if captured:
            entries.append(ledger.LedgerEntry(
                TransactionType.CAPTURE, job.held_amount or split.base_amount, captured, job.poster_id
            ))
        entries.append(ledger.LedgerEntry(
            TransactionType.PAYOUT, split.payee_amount, transfer_id, job.assigned_helper_id
        ))
        entries.append(ledger.LedgerEntry(TransactionType.COMMISSION, split.platform_amount, transfer_id))
        await ledger.record_entries(
            db, job_id, entries, provider=self.gateway.provider, currency=self.currency
        )
        await db.refresh(job)

        await dispatch(self.notifier, "job.paid", job.id, job.assigned_helper_id, split.to_dict())
        return job

    # --- Cancellation ---

    async def cancel(self, db: AsyncSession, job_id: uuid.UUID, poster_id: uuid.UUID) -> Job:
        """Poster withdraws the job. Any hold is refunded before the status changes."""
        job = await job_store.get_job(db, job_id, for_update=True)
        if poster_id != job.poster_id:
            raise Unauthorized("Only the job owner can cancel this job")
        job_store.require_status(job, (JobStatus.POSTED, JobStatus.CONFIRMED), "cancel")

        refund_id = None
        refund_amount = job.held_amount or job.final_price or job.price
        if job.payment_intent_id:
            try:
                refund_id = await self.gateway.refund(
                    job.payment_intent_id, refund_amount, refund_key(job.id)
                )
            except GatewayError as e:
                await db.rollback()
                logger.warning("Refund for job %s failed, cancellation aborted: %s", job_id, e)
                raise BadRequest(f"Refund failed, job was not cancelled: {e}")

        # recorded in the same transaction as the status change
        if refund_id:
            ledger.add_entries(
                db,
                job_id,
                [ledger.LedgerEntry(TransactionType.REFUND, refund_amount, refund_id, job.poster_id)],
                provider=self.gateway.provider,
                currency=self.currency,
            )
        if job.job_status == JobStatus.POSTED:
            await db.execute(delete(CounterOffer).where(CounterOffer.job_id == job.id))
        await job_store.transition(
            db, job, JobStatus.CANCELLED, actor_id=poster_id, when=self.clock(),
            values={"is_active": False},
        )
        await db.commit()
        logger.info("Job %s cancelled by %s (refund %s)", job_id, poster_id, refund_id)
        await db.refresh(job)

        await dispatch(self.notifier, "job.cancelled", job.id, job.assigned_helper_id)
        return job

    # --- Extra time ---

    async def request_extra_time(
        self,
        db: AsyncSession,
        job_id: uuid.UUID,
        poster_id: uuid.UUID,
        hours: Decimal,
        reason: str | None = None,
    ) -> Job:
        job = await job_store.get_job(db, job_id)
        if poster_id != job.poster_id:
            raise Unauthorized("Only the job owner can request extra time")
        job_store.require_status(job, JobStatus.ONGOING, "request extra time")
        if job.payment_type != PaymentType.HOURLY:
            raise BadRequest("Extra time is only available for hourly jobs")
        if not self.extra_time_min_hours <= hours <= self.extra_time_max_hours:
            raise BadRequest(
                f"Extra time must be between {self.extra_time_min_hours} "
                f"and {self.extra_time_max_hours} hours"
            )
        if job.extra_time_requested is not None:
            raise Conflict("An extra time request is already pending")

        await job_store.compare_and_set(
            db,
            job.id,
            JobStatus.ONGOING,
            {
                "extra_time_requested": hours,
                "extra_time_reason": reason,
                "extra_time_requested_at": self.clock(),
                "extra_time_decided_at": None,
            },
            Job.extra_time_requested.is_(None),
        )
        await db.commit()
        await db.refresh(job)

        await dispatch(self.notifier, "extra_time.requested", job.id, job.assigned_helper_id, {
            "hours": str(hours),
            "reason": reason,
        })
        return job

    async def decide_extra_time(
        self, db: AsyncSession, job_id: uuid.UUID, poster_id: uuid.UUID, approve: bool
    ) -> Job:
        """Poster approves or declines the pending request.

        Approval charges ``hourly_rate × hours`` plus the platform fee on top,
        captured at once. If the charge fails the approval is undone.
        """
        job = await job_store.get_job(db, job_id, for_update=True)
        if poster_id != job.poster_id:
            raise Unauthorized("Only the job owner can decide on extra time")
        job_store.require_status(job, JobStatus.ONGOING, "decide on extra time")
        if job.extra_time_requested is None:
            raise BadRequest("No extra time request is pending")

        now = self.clock()
        hours = job.extra_time_requested
        cleared = {
            "extra_time_requested": None,
            "extra_time_reason": None,
            "extra_time_decided_at": now,
        }
        if not approve:
            # extra_time_approved keeps reporting earlier approvals
            await job_store.compare_and_set(db, job.id, JobStatus.ONGOING, cleared)
            await db.commit()
            await db.refresh(job)
            await dispatch(self.notifier, "extra_time.declined", job.id, job.assigned_helper_id, {
                "hours": str(hours),
            })
            return job

        payer = await require_payer(db, job.poster_id)
        prior_approved = job.extra_time_approved
        prior_hours = job.total_approved_hours or Decimal("0")
        base = ((job.hourly_rate or Decimal("0")) * hours).quantize(CENT)
        split = split_commission(base, self.fee_rate)

        job.extra_time_approved = True
        job.total_approved_hours = prior_hours + hours
        try:
            hold_id = await self.gateway.authorize_charge(
                payer.customer_id,
                split.total_amount,
                extra_time_key(job.id, prior_hours, split.total_cents),
                payment_method=payer.default_payment_method,
                metadata={"job_id": str(job.id), "extra_hours": str(hours)},
            )
            charge_id = await self.gateway.capture_hold(hold_id, capture_key(hold_id))
        except GatewayError as e:
            job.extra_time_approved = prior_approved
            job.total_approved_hours = prior_hours
            await db.rollback()
            logger.warning("Extra time charge for job %s failed, approval reverted: %s", job_id, e)
            raise GatewayFailure(f"Extra time payment failed: {e}", retryable=e.retryable)

        await job_store.compare_and_set(
            db,
            job.id,
            JobStatus.ONGOING,
            {**cleared, "extra_time_approved": True, "total_approved_hours": prior_hours + hours},
            Job.extra_time_requested.is_not(None),
        )
        await db.commit()
        logger.info("Extra time %sh approved for job %s, charged %s", hours, job_id, split.total_amount)

        await ledger.record_entries(
            db,
            job_id,
            [ledger.LedgerEntry(TransactionType.EXTRA_TIME_CHARGE, split.total_amount, charge_id, job.poster_id)],
            provider=self.gateway.provider,
            currency=self.currency,
        )
        await db.refresh(job)

        await dispatch(self.notifier, "extra_time.approved", job.id, job.assigned_helper_id, {
            "hours": str(hours),
            "total_approved_hours": str(job.total_approved_hours),
        })
        return job


_lifecycle: JobLifecycle | None = None


def get_lifecycle() -> JobLifecycle:
    """Process-wide engine built from settings. Overridden in tests."""
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = JobLifecycle(
            get_payment_gateway(),
            get_notifier(),
            fee_rate=settings.resolved_fee_rate,
            currency=settings.currency,
            extra_time_min_hours=settings.extra_time_min_hours,
            extra_time_max_hours=settings.extra_time_max_hours,
        )
    return _lifecycle
