"""Payment ledger: append-only record of money movement per job.

The gateway is the source of truth for money. Most ledger writes happen after
the gateway call and the state change have succeeded, so a failed insert is
logged and dropped instead of being reported as a failed payment. Refunds are
staged with ``add_entries`` and commit together with the cancellation.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.payment import PaymentTransaction, TransactionType

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    type: TransactionType
    amount: Decimal
    reference_number: str | None
    user_id: uuid.UUID | None = None
    status: str = "succeeded"


def add_entries(
    db: AsyncSession,
    job_id: uuid.UUID,
    entries: list[LedgerEntry],
    *,
    provider: str,
    currency: str,
) -> None:
    """Stage ledger rows in the caller's transaction without committing."""
    db.add_all([
        PaymentTransaction(
            id=uuid.uuid4(),
            type=entry.type,
            amount=entry.amount,
            currency=currency,
            status=entry.status,
            provider=provider,
            reference_number=entry.reference_number,
            order_id=job_id,
            user_id=entry.user_id,
        )
        for entry in entries
    ])


async def record_entries(
    db: AsyncSession,
    job_id: uuid.UUID,
    entries: list[LedgerEntry],
    *,
    provider: str,
    currency: str,
) -> bool:
    """Insert and commit ledger rows. Returns False (after logging) on failure."""
    if not entries:
        return True
    try:
        add_entries(db, job_id, entries, provider=provider, currency=currency)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Ledger write failed for job %s (%s); gateway result stands",
            job_id, ", ".join(e.type.value for e in entries),
        )
        return False
    return True


async def list_for_job(db: AsyncSession, job_id: uuid.UUID) -> list[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.order_id == job_id)
        .order_by(PaymentTransaction.created_at)
    )
    return list(result.scalars().all())


async def helper_earnings(
    db: AsyncSession, helper_id: uuid.UUID, since: datetime | None = None
) -> dict:
    """Sum of payouts received by a helper, optionally from ``since`` onward."""
    stmt = select(func.count(), func.coalesce(func.sum(PaymentTransaction.amount), 0)).where(
        PaymentTransaction.user_id == helper_id,
        PaymentTransaction.type == TransactionType.PAYOUT,
    )
    if since is not None:
        stmt = stmt.where(PaymentTransaction.created_at >= since)
    count, total = (await db.execute(stmt)).one()
    return {
        "helper_id": helper_id,
        "payout_count": count,
        "total_earned": Decimal(str(total)).quantize(Decimal("0.01")),
        "since": since,
    }
