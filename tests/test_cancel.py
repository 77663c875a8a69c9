"""Tests for job cancellation and refunds."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from marketplace.errors import BadRequest, InvalidState, Unauthorized
from marketplace.models.job import JobStatus, PaymentType
from marketplace.models.payment import TransactionType


@pytest.mark.asyncio
async def test_cancel_open_job_drops_offers_without_refund(
    db, lifecycle, make_job, ledger_rows, gateway, clock, poster_id, helper_id, other_helper_id,
) -> None:
    job_id = await make_job()
    await lifecycle.offers.propose(db, job_id, helper_id, Decimal("120.00"), PaymentType.FIXED)
    await lifecycle.offers.propose(db, job_id, other_helper_id, Decimal("20.00"), PaymentType.HOURLY)

    clock.advance(minutes=5)
    job = await lifecycle.cancel(db, job_id, poster_id)

    assert job.job_status == JobStatus.CANCELLED
    assert job.is_active is False
    history = await lifecycle.get_status_history(db, job_id)
    assert (history[-1].from_status, history[-1].to_status) == (JobStatus.POSTED, JobStatus.CANCELLED)
    assert await lifecycle.offers.list_for_job(db, job_id) == []
    assert gateway.calls_for("refund") == []
    assert await ledger_rows(job_id) == []
    assert await lifecycle.list_jobs(db, poster_id=poster_id) == []


@pytest.mark.asyncio
async def test_cancel_confirmed_job_refunds_hold(
    db, lifecycle, make_job, ledger_rows, gateway, notifier, poster_id, helper_id,
) -> None:
    job_id = await make_job("confirmed")
    job = await lifecycle.cancel(db, job_id, poster_id)

    assert job.job_status == JobStatus.CANCELLED
    assert gateway.calls_for("refund") == [("refund", f"refund:{job_id}", Decimal("100.00"))]

    refunds = [r for r in await ledger_rows(job_id) if r.type == TransactionType.REFUND]
    assert len(refunds) == 1
    assert refunds[0].amount == Decimal("100.00")
    assert refunds[0].user_id == poster_id
    assert ("job.cancelled", job_id, helper_id) in [e[:3] for e in notifier.events]


@pytest.mark.asyncio
async def test_refund_failure_leaves_job_confirmed(
    db, lifecycle, make_job, load_job, ledger_rows, gateway, poster_id,
) -> None:
    job_id = await make_job("confirmed")
    gateway.fail_next("refund", "charge already refunded", retryable=False)

    with pytest.raises(BadRequest):
        await lifecycle.cancel(db, job_id, poster_id)

    job = await load_job(job_id)
    assert job.job_status == JobStatus.CONFIRMED
    assert job.is_active is True
    assert TransactionType.REFUND not in [r.type for r in await ledger_rows(job_id)]

    # a retry with a working processor goes through under the same key
    await lifecycle.cancel(db, job_id, poster_id)
    keys = [c[1] for c in gateway.calls_for("refund")]
    assert keys == [f"refund:{job_id}", f"refund:{job_id}"]


@pytest.mark.asyncio
async def test_refund_row_and_cancellation_commit_together(
    db, lifecycle, make_job, load_job, ledger_rows, gateway, poster_id, monkeypatch,
) -> None:
    job_id = await make_job("confirmed")

    def broken_add_all(instances) -> None:
        raise SQLAlchemyError("ledger table unavailable")

    monkeypatch.setattr(db, "add_all", broken_add_all)
    with pytest.raises(SQLAlchemyError):
        await lifecycle.cancel(db, job_id, poster_id)
    await db.rollback()

    # no cancelled job without its refund row
    assert (await load_job(job_id)).job_status == JobStatus.CONFIRMED
    assert TransactionType.REFUND not in [r.type for r in await ledger_rows(job_id)]

    monkeypatch.undo()
    job = await lifecycle.cancel(db, job_id, poster_id)
    assert job.job_status == JobStatus.CANCELLED
    refunds = [r for r in await ledger_rows(job_id) if r.type == TransactionType.REFUND]
    assert len(refunds) == 1
    assert len({c[1] for c in gateway.calls_for("refund")}) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("stage", ["ongoing", "completed", "paid"])
async def test_cannot_cancel_once_work_started(db, lifecycle, make_job, gateway, poster_id, stage) -> None:
    job_id = await make_job(stage)
    with pytest.raises(InvalidState):
        await lifecycle.cancel(db, job_id, poster_id)
    assert gateway.calls_for("refund") == []


@pytest.mark.asyncio
async def test_cancel_twice_is_invalid(db, lifecycle, make_job, poster_id) -> None:
    job_id = await make_job()
    await lifecycle.cancel(db, job_id, poster_id)
    with pytest.raises(InvalidState):
        await lifecycle.cancel(db, job_id, poster_id)


@pytest.mark.asyncio
async def test_only_poster_can_cancel(db, lifecycle, make_job, helper_id) -> None:
    job_id = await make_job("confirmed")
    with pytest.raises(Unauthorized):
        await lifecycle.cancel(db, job_id, helper_id)
