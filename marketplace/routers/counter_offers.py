"""Counter-offer negotiation endpoints."""

import uuid

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import get_current_user_id
from marketplace.database import get_db
from marketplace.schemas.counter_offer import CounterOfferCreate, CounterOfferResponse
from marketplace.schemas.job import JobResponse
from marketplace.services.job import JobLifecycle, get_lifecycle

router = APIRouter(tags=["counter-offers"])


@router.post("/jobs/{job_id}/counter-offers", response_model=CounterOfferResponse, status_code=201)
async def propose_counter_offer(
    job_id: uuid.UUID,
    data: CounterOfferCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> CounterOfferResponse:
    """Helper proposes their own price and payment type."""
    offer = await lifecycle.offers.propose(db, job_id, user_id, data.amount, data.type, data.note)
    return CounterOfferResponse.model_validate(offer)


@router.get("/jobs/{job_id}/counter-offers", response_model=list[CounterOfferResponse])
async def list_job_counter_offers(
    job_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> list[CounterOfferResponse]:
    """The poster sees every offer; a helper sees only their own."""
    offers = await lifecycle.offers.list_for_job(db, job_id, viewer_id=user_id)
    return [CounterOfferResponse.model_validate(o) for o in offers]


@router.get("/counter-offers/mine", response_model=list[CounterOfferResponse])
async def list_my_counter_offers(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> list[CounterOfferResponse]:
    offers = await lifecycle.offers.list_for_helper(db, user_id)
    return [CounterOfferResponse.model_validate(o) for o in offers]


@router.post("/counter-offers/{counter_offer_id}/accept", response_model=JobResponse)
async def accept_counter_offer(
    counter_offer_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> JobResponse:
    """Poster accepts an offer. Confirms the job and places the payment hold."""
    job = await lifecycle.offers.accept(db, counter_offer_id, user_id)
    return JobResponse.model_validate(job)


@router.post("/counter-offers/{counter_offer_id}/decline", status_code=204)
async def decline_counter_offer(
    counter_offer_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    lifecycle: JobLifecycle = Depends(get_lifecycle),
) -> Response:
    await lifecycle.offers.decline(db, counter_offer_id, user_id)
    return Response(status_code=204)
