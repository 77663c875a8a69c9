"""Counter-offer negotiation and helper binding.

Both ways of confirming a job (poster accepts an offer, helper accepts the
posted price) end in ``_confirm``: one conditional UPDATE binds the helper,
sibling offers are deleted, and the poster's payment hold is placed, all in
one transaction. If the hold fails, the whole binding rolls back.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import BadRequest, Conflict, Forbidden, GatewayFailure, NotFound, Unauthorized
from marketplace.models.counter_offer import CounterOffer
from marketplace.models.job import Job, JobStatus, PaymentType
from marketplace.models.payment import TransactionType
from marketplace.services import job_store, ledger
from marketplace.services.commission import CENT, to_cents
from marketplace.services.gateway import GatewayError, PaymentGateway, hold_key
from marketplace.services.notifications import Notifier, dispatch
from marketplace.services.payment_profiles import require_payer

logger = logging.getLogger(__name__)


def _hold_amount(job: Job, final_price: Decimal, payment_type: PaymentType, hourly_rate: Decimal | None) -> Decimal:
    """Amount to authorize on confirmation.

    Hourly jobs with a schedule hold rate × scheduled hours; everything else
    holds the confirmed price.
    """
    if payment_type == PaymentType.HOURLY and hourly_rate and job.start_time and job.end_time:
        start = job_store.ensure_utc(job.start_time)
        end = job_store.ensure_utc(job.end_time)
        hours = Decimal(str((end - start).total_seconds())) / Decimal("3600")
        if hours > 0:
            return (hourly_rate * hours).quantize(CENT)
    return final_price


class CounterOfferEngine:
    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: Notifier,
        *,
        currency: str = "usd",
        clock: Callable[[], datetime] = job_store.utcnow,
    ) -> None:
        self.gateway = gateway
        self.notifier = notifier
        self.currency = currency
        self.clock = clock

    async def _get_offer(self, db: AsyncSession, counter_offer_id: uuid.UUID) -> CounterOffer:
        result = await db.execute(select(CounterOffer).where(CounterOffer.id == counter_offer_id))
        offer = result.scalar_one_or_none()
        if offer is None:
            raise NotFound("Counter offer not found")
        return offer

    async def propose(
        self,
        db: AsyncSession,
        job_id: uuid.UUID,
        helper_id: uuid.UUID,
        amount: Decimal,
        type: PaymentType,
        note: str | None = None,
    ) -> CounterOffer:
        """Helper proposes their own price and payment type for a posted job."""
        job = await job_store.get_job(db, job_id)
        if helper_id == job.poster_id:
            raise Forbidden("Cannot make a counter offer on your own job")
        if job.accepted_counter_offer_id is not None:
            raise Conflict("This job already has an accepted offer")
        if job.job_status != JobStatus.POSTED or job.assigned_helper_id is not None or not job.is_active:
            raise Conflict(f"Job is no longer open for offers, currently {job.job_status.value}")
        if amount <= 0:
            raise BadRequest("Counter offer amount must be positive")

        now = self.clock()
        offer = CounterOffer(
            id=uuid.uuid4(),
            job_id=job.id,
            helper_id=helper_id,
            amount=amount,
            type=type,
            note=note,
            created_at=now,
        )
        db.add(offer)
        timeline = await job_store.get_timeline(db, job.id)
        job_store.stamp(timeline, "counter_offer_at", now)
        await db.commit()
        await db.refresh(offer)

        await dispatch(self.notifier, "counter_offer.received", job.id, job.poster_id, {
            "counter_offer_id": str(offer.id),
            "helper_id": str(helper_id),
            "amount": str(offer.amount),
            "type": offer.type.value,
        })
        return offer

    async def accept(
        self, db: AsyncSession, counter_offer_id: uuid.UUID, acting_user_id: uuid.UUID
    ) -> Job:
        """Poster accepts an offer; its terms become the job's binding terms."""
        offer = await self._get_offer(db, counter_offer_id)
        if acting_user_id == offer.helper_id:
            raise Unauthorized("A helper cannot accept their own counter offer")

        job = await job_store.get_job(db, offer.job_id)
        if acting_user_id != job.poster_id:
            raise Unauthorized("Only the job owner can accept a counter offer")
        if job.accepted_counter_offer_id is not None or job.assigned_helper_id is not None:
            raise Conflict("This job already has an accepted offer")
        if job.job_status != JobStatus.POSTED:
            raise Conflict(f"Job is no longer open for offers, currently {job.job_status.value}")

        hourly_rate = offer.amount if offer.type == PaymentType.HOURLY else job.hourly_rate
        job = await self._confirm(
            db,
            job,
            helper_id=offer.helper_id,
            actor_id=acting_user_id,
            final_price=offer.amount,
            payment_type=offer.type,
            hourly_rate=hourly_rate,
            offer=offer,
        )
        await dispatch(self.notifier, "counter_offer.accepted", job.id, offer.helper_id, {
            "counter_offer_id": str(offer.id),
            "final_price": str(job.final_price),
        })
        return job

    async def decline(
        self, db: AsyncSession, counter_offer_id: uuid.UUID, acting_user_id: uuid.UUID
    ) -> None:
        offer = await self._get_offer(db, counter_offer_id)
        job = await job_store.get_job(db, offer.job_id)
        if acting_user_id != job.poster_id:
            raise Unauthorized("Only the job owner can decline a counter offer")
        if job.accepted_counter_offer_id == offer.id:
            raise Conflict("Cannot decline an already accepted counter offer")

        await db.execute(delete(CounterOffer).where(CounterOffer.id == offer.id))
        await db.commit()

        await dispatch(self.notifier, "counter_offer.declined", job.id, offer.helper_id, {
            "counter_offer_id": str(offer.id),
        })

    async def direct_accept(self, db: AsyncSession, job_id: uuid.UUID, helper_id: uuid.UUID) -> Job:
        """Helper takes the job at the posted price, without negotiating."""
        job = await job_store.get_job(db, job_id)
        if helper_id == job.poster_id:
            raise Forbidden("Cannot accept your own job")
        if job.job_status != JobStatus.POSTED:
            raise Conflict(f"Job is no longer open, currently {job.job_status.value}")
        if job.assigned_helper_id is not None or job.accepted_counter_offer_id is not None:
            raise Conflict("Job already has an assigned helper")

        job = await self._confirm(
            db,
            job,
            helper_id=helper_id,
            actor_id=helper_id,
            final_price=job.price,
            payment_type=job.payment_type,
            hourly_rate=job.hourly_rate,
            offer=None,
        )
        await dispatch(self.notifier, "job.direct_accepted", job.id, job.poster_id, {
            "helper_id": str(helper_id),
            "final_price": str(job.final_price),
        })
        return job

    async def _confirm(
        self,
        db: AsyncSession,
        job: Job,
        *,
        helper_id: uuid.UUID,
        actor_id: uuid.UUID,
        final_price: Decimal,
        payment_type: PaymentType,
        hourly_rate: Decimal | None,
        offer: CounterOffer | None,
    ) -> Job:
        payer = await require_payer(db, job.poster_id)
        now = self.clock()
        job_id = job.id

        await job_store.transition(
            db,
            job,
            JobStatus.CONFIRMED,
            actor_id=actor_id,
            when=now,
            values={
                "assigned_helper_id": helper_id,
                "accepted_counter_offer_id": offer.id if offer else None,
                "final_price": final_price,
                "payment_type": payment_type,
                "hourly_rate": hourly_rate,
            },
            criteria=(
                Job.assigned_helper_id.is_(None),
                Job.accepted_counter_offer_id.is_(None),
                Job.is_active.is_(True),
            ),
        )

        siblings = delete(CounterOffer).where(CounterOffer.job_id == job_id)
        if offer is not None:
            siblings = siblings.where(CounterOffer.id != offer.id)
        await db.execute(siblings)

        amount = _hold_amount(job, final_price, payment_type, hourly_rate)
        try:
            hold_id = await self.gateway.authorize_charge(
                payer.customer_id,
                amount,
                hold_key(job_id, to_cents(amount)),
                payment_method=payer.default_payment_method,
                metadata={"job_id": str(job_id)},
            )
        except GatewayError as e:
            await db.rollback()
            logger.warning("Hold for job %s failed, confirmation rolled back: %s", job_id, e)
            raise GatewayFailure(f"Payment authorization failed: {e}", retryable=e.retryable)

        await db.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(payment_intent_id=hold_id, held_amount=amount)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info("Job %s confirmed for helper %s at %s (hold %s)", job_id, helper_id, final_price, hold_id)

        await ledger.record_entries(
            db,
            job_id,
            [ledger.LedgerEntry(TransactionType.AUTHORIZATION, amount, hold_id, job.poster_id, "requires_capture")],
            provider=self.gateway.provider,
            currency=self.currency,
        )
        await db.refresh(job)
        return job

    async def list_for_job(
        self, db: AsyncSession, job_id: uuid.UUID, viewer_id: uuid.UUID | None = None
    ) -> list[CounterOffer]:
        """Offers on a job. Helpers other than the poster only see their own."""
        job = await job_store.get_job(db, job_id)
        query = select(CounterOffer).where(CounterOffer.job_id == job_id)
        if viewer_id is not None and viewer_id != job.poster_id:
            query = query.where(CounterOffer.helper_id == viewer_id)
        result = await db.execute(query.order_by(CounterOffer.created_at))
        return list(result.scalars().all())

    async def list_for_helper(self, db: AsyncSession, helper_id: uuid.UUID) -> list[CounterOffer]:
        result = await db.execute(
            select(CounterOffer).where(CounterOffer.helper_id == helper_id).order_by(CounterOffer.created_at)
        )
        return list(result.scalars().all())
