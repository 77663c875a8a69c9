"""Pydantic v2 schemas for ledger and earnings endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: str
    amount: Decimal
    currency: str
    status: str
    provider: str
    reference_number: str | None
    order_id: uuid.UUID
    user_id: uuid.UUID | None
    created_at: datetime

    @field_validator("type", mode="before")
    @classmethod
    def serialize_type(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class EarningsResponse(BaseModel):
    helper_id: uuid.UUID
    payout_count: int
    total_earned: Decimal
    since: datetime | None = None


class CommissionQuote(BaseModel):
    """Fee schedule applied to a hypothetical price, shown before negotiating."""
    base_amount: Decimal
    fee_rate: Decimal
    platform_amount: Decimal
    payee_amount: Decimal
    total_amount: Decimal
