"""Read-only lookups of gateway identifiers for posters and helpers."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import PreconditionFailed
from marketplace.models.payment import PaymentProfile


async def _get_profile(db: AsyncSession, user_id: uuid.UUID) -> PaymentProfile | None:
    result = await db.execute(select(PaymentProfile).where(PaymentProfile.user_id == user_id))
    return result.scalar_one_or_none()


async def get_payout_destination(db: AsyncSession, user_id: uuid.UUID) -> str | None:
    """Connected payout account for a helper, or None if not configured/onboarded."""
    profile = await _get_profile(db, user_id)
    if profile is None or not profile.payout_account_id or not profile.payout_enabled:
        return None
    return profile.payout_account_id


async def require_payout_destination(db: AsyncSession, user_id: uuid.UUID) -> str:
    destination = await get_payout_destination(db, user_id)
    if destination is None:
        raise PreconditionFailed(f"Helper {user_id} has no payout destination configured")
    return destination


async def require_payer(db: AsyncSession, user_id: uuid.UUID) -> PaymentProfile:
    """Billing profile able to carry a hold: a customer with a payment method."""
    profile = await _get_profile(db, user_id)
    if profile is None or not profile.customer_id or not profile.default_payment_method:
        raise PreconditionFailed(f"User {user_id} has no payment method on file")
    return profile
