"""Tests for the finish / payout path."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from marketplace.errors import GatewayFailure, InvalidState, PreconditionFailed, Unauthorized
from marketplace.models.job import JobStatus
from marketplace.models.payment import PaymentProfile, TransactionType


@pytest.mark.asyncio
async def test_finish_captures_transfers_and_records_split(
    db, lifecycle, make_job, load_timeline, ledger_rows, gateway, notifier, poster_id, helper_id,
) -> None:
    job_id = await make_job("completed")
    job = await lifecycle.finish(db, job_id, poster_id)

    assert job.job_status == JobStatus.PAID
    assert (await load_timeline(job_id)).paid_at is not None

    hold_id = job.payment_intent_id
    assert gateway.calls_for("capture_hold") == [("capture_hold", f"capture:{hold_id}", None)]
    assert gateway.calls_for("transfer") == [("transfer", f"payout:{job_id}:9000", Decimal("90.00"))]

    rows = {r.type: r for r in await ledger_rows(job_id)}
    assert rows[TransactionType.CAPTURE].amount == Decimal("100.00")
    assert rows[TransactionType.PAYOUT].amount == Decimal("90.00")
    assert rows[TransactionType.PAYOUT].user_id == helper_id
    assert rows[TransactionType.COMMISSION].amount == Decimal("10.00")
    assert rows[TransactionType.COMMISSION].user_id is None
    assert rows[TransactionType.PAYOUT].provider == "fake"

    paid = [e for e in notifier.events if e[0] == "job.paid"]
    assert paid[0][2] == helper_id
    assert paid[0][3]["payee_amount"] == "90.00"


@pytest.mark.asyncio
async def test_finish_twice_pays_once(db, lifecycle, make_job, ledger_rows, gateway, poster_id) -> None:
    job_id = await make_job("completed")
    await lifecycle.finish(db, job_id, poster_id)
    job = await lifecycle.finish(db, job_id, poster_id)

    assert job.job_status == JobStatus.PAID
    assert len(gateway.calls_for("transfer")) == 1
    types = [r.type for r in await ledger_rows(job_id)]
    assert types.count(TransactionType.PAYOUT) == 1
    assert types.count(TransactionType.COMMISSION) == 1


@pytest.mark.asyncio
async def test_concurrent_settlement_during_transfer_pays_once(
    db, lifecycle, make_job, ledger_rows, gateway, session_factory, poster_id, monkeypatch,
) -> None:
    job_id = await make_job("completed")
    real_transfer = gateway.transfer
    raced = False

    async def transfer_after_sweep(*args, **kwargs):
        nonlocal raced
        if not raced:
            raced = True
            # the sweep settles the job while this finish is mid-transfer
            async with session_factory() as other:
                swept = await lifecycle.settle_payout(other, job_id)
                assert swept.job_status == JobStatus.PAID
        return await real_transfer(*args, **kwargs)

    monkeypatch.setattr(gateway, "transfer", transfer_after_sweep)
    job = await lifecycle.finish(db, job_id, poster_id)

    assert job.job_status == JobStatus.PAID
    transfers = gateway.calls_for("transfer")
    assert len(transfers) == 2
    assert len({c[1] for c in transfers}) == 1
    types = [r.type for r in await ledger_rows(job_id)]
    assert types.count(TransactionType.PAYOUT) == 1
    assert types.count(TransactionType.COMMISSION) == 1


@pytest.mark.asyncio
async def test_sweep_path_after_manual_finish_is_a_no_op(db, lifecycle, make_job, gateway, poster_id) -> None:
    job_id = await make_job("completed")
    await lifecycle.finish(db, job_id, poster_id)
    before = len(gateway.calls)

    job = await lifecycle.settle_payout(db, job_id, actor_id=None)
    assert job.job_status == JobStatus.PAID
    assert len(gateway.calls) == before


@pytest.mark.asyncio
async def test_only_poster_can_finish(db, lifecycle, make_job, helper_id) -> None:
    job_id = await make_job("completed")
    with pytest.raises(Unauthorized):
        await lifecycle.finish(db, job_id, helper_id)


@pytest.mark.asyncio
async def test_finish_requires_completion(db, lifecycle, make_job, gateway, poster_id) -> None:
    job_id = await make_job("ongoing")
    with pytest.raises(InvalidState):
        await lifecycle.finish(db, job_id, poster_id)
    assert gateway.calls_for("transfer") == []


@pytest.mark.asyncio
async def test_missing_payout_destination(
    db, session_factory, lifecycle, make_job, load_job, gateway, poster_id, helper_id,
) -> None:
    job_id = await make_job("completed")
    async with session_factory() as session:
        profile = await session.get(PaymentProfile, helper_id)
        profile.payout_enabled = False
        await session.commit()

    with pytest.raises(PreconditionFailed):
        await lifecycle.finish(db, job_id, poster_id)
    assert gateway.calls_for("transfer") == []
    assert (await load_job(job_id)).job_status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_transfer_failure_leaves_job_completed_and_is_retryable(
    db, lifecycle, make_job, load_job, load_timeline, ledger_rows, gateway, poster_id,
) -> None:
    job_id = await make_job("completed")
    gateway.fail_next("transfer", "processor timed out", retryable=True)

    with pytest.raises(GatewayFailure) as exc_info:
        await lifecycle.finish(db, job_id, poster_id)
    assert exc_info.value.retryable is True
    assert (await load_job(job_id)).job_status == JobStatus.COMPLETED
    assert (await load_timeline(job_id)).paid_at is None
    assert TransactionType.PAYOUT not in [r.type for r in await ledger_rows(job_id)]

    job = await lifecycle.finish(db, job_id, poster_id)
    assert job.job_status == JobStatus.PAID
    transfers = gateway.calls_for("transfer")
    assert len(transfers) == 2
    assert transfers[0][1] == transfers[1][1]


@pytest.mark.asyncio
async def test_ledger_failure_does_not_fail_payout(
    db, lifecycle, make_job, load_job, ledger_rows, poster_id, monkeypatch,
) -> None:
    job_id = await make_job("completed")

    def broken_add_all(instances) -> None:
        raise SQLAlchemyError("ledger table unavailable")

    monkeypatch.setattr(db, "add_all", broken_add_all)
    job = await lifecycle.finish(db, job_id, poster_id)

    assert job.job_status == JobStatus.PAID
    assert (await load_job(job_id)).job_status == JobStatus.PAID
    assert TransactionType.PAYOUT not in [r.type for r in await ledger_rows(job_id)]


@pytest.mark.asyncio
async def test_payout_uses_injected_fee_rate(
    db, gateway, notifier, clock, make_job, poster_id,
) -> None:
    from marketplace.services.job import JobLifecycle

    job_id = await make_job("completed")
    generous = JobLifecycle(gateway, notifier, fee_rate=Decimal("0.05"), clock=clock)
    await generous.finish(db, job_id, poster_id)
    assert gateway.calls_for("transfer")[-1][2] == Decimal("95.00")


@pytest.mark.asyncio
async def test_finish_missing_job(db, lifecycle, poster_id) -> None:
    from marketplace.errors import NotFound

    with pytest.raises(NotFound):
        await lifecycle.finish(db, uuid.uuid4(), poster_id)
