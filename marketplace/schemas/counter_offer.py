"""Pydantic v2 schemas for counter-offer endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from marketplace.models.job import PaymentType


class CounterOfferCreate(BaseModel):
    """Helper proposes their own terms. For HOURLY offers ``amount`` is the rate."""
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    type: PaymentType = PaymentType.FIXED
    note: str | None = Field(None, max_length=2048)


class CounterOfferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    helper_id: uuid.UUID
    amount: Decimal
    type: str
    note: str | None
    created_at: datetime

    @field_validator("type", mode="before")
    @classmethod
    def serialize_type(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
