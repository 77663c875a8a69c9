"""Tests for the payment ledger."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from marketplace.errors import Unauthorized
from marketplace.models.payment import TransactionType
from marketplace.services import ledger


@pytest.mark.asyncio
async def test_paid_job_has_full_money_trail(db, lifecycle, make_job, poster_id, helper_id) -> None:
    job_id = await make_job("paid")

    rows = await lifecycle.list_transactions(db, job_id, helper_id)
    assert sorted(r.type.value for r in rows) == sorted(
        t.value for t in (
            TransactionType.AUTHORIZATION,
            TransactionType.CAPTURE,
            TransactionType.PAYOUT,
            TransactionType.COMMISSION,
        )
    )
    authorization = next(r for r in rows if r.type == TransactionType.AUTHORIZATION)
    assert authorization.status == "requires_capture"
    assert authorization.user_id == poster_id
    assert all(r.currency == "usd" for r in rows)


@pytest.mark.asyncio
async def test_transactions_hidden_from_strangers(db, lifecycle, make_job, other_helper_id) -> None:
    job_id = await make_job("paid")
    with pytest.raises(Unauthorized):
        await lifecycle.list_transactions(db, job_id, other_helper_id)


@pytest.mark.asyncio
async def test_helper_earnings_sums_payouts(db, make_job, helper_id, other_helper_id) -> None:
    await make_job("paid")
    await make_job("paid", price=Decimal("50.00"))
    await make_job("completed")

    earnings = await ledger.helper_earnings(db, helper_id)
    assert earnings["payout_count"] == 2
    assert earnings["total_earned"] == Decimal("135.00")

    nobody = await ledger.helper_earnings(db, other_helper_id)
    assert nobody["payout_count"] == 0
    assert nobody["total_earned"] == Decimal("0.00")


@pytest.mark.asyncio
async def test_helper_earnings_since(db, make_job, helper_id) -> None:
    await make_job("paid")
    later = await ledger.helper_earnings(db, helper_id, since=datetime.now(UTC) + timedelta(days=1))
    assert later["payout_count"] == 0


@pytest.mark.asyncio
async def test_record_entries_with_nothing_to_write(db, make_job) -> None:
    job_id = await make_job()
    assert await ledger.record_entries(db, job_id, [], provider="fake", currency="usd") is True
    assert await ledger.list_for_job(db, job_id) == []
