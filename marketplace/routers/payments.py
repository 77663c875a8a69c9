"""Ledger, earnings and fee endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import get_current_user_id
from marketplace.database import get_db
from marketplace.schemas.payment import CommissionQuote, EarningsResponse, TransactionResponse
from marketplace.services import ledger
from marketplace.services.commission import split_commission
from marketplace.services.job import JobLifecycle, get_lifecycle

router = APIRouter(tags=["payments"])


@router.get("/jobs/{job_id}/transactions", response_model=list[TransactionResponse])
async def list_job_transactions(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> list[TransactionResponse]:
    """Money movement recorded for a job. Parties only."""
    transactions = await lifecycle.list_transactions(db, job_id, user_id)
    return [TransactionResponse.model_validate(t) for t in transactions]


@router.get("/earnings", response_model=EarningsResponse)
async def my_earnings(
    since: datetime | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> EarningsResponse:
    """Payouts received by the acting helper."""
    return EarningsResponse(**await ledger.helper_earnings(db, user_id, since))


@router.get("/fees", response_model=CommissionQuote)
async def fee_quote(
    amount: Decimal = Query(Decimal("100.00"), ge=0, max_digits=12, decimal_places=2),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> CommissionQuote:
    """How a price splits between helper and platform. Public, no auth required."""
    split = split_commission(amount, lifecycle.fee_rate)
    return CommissionQuote(
        base_amount=split.base_amount,
        fee_rate=split.fee_rate,
        platform_amount=split.platform_amount,
        payee_amount=split.payee_amount,
        total_amount=split.total_amount,
    )
