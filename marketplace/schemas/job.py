"""Pydantic v2 schemas for Job lifecycle endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from marketplace.models.job import PaymentType


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class JobCreate(BaseModel):
    """Poster publishes a job.

    HOURLY jobs must carry an ``hourly_rate``; ``price`` is then the poster's
    estimate and the settled price is computed at completion from the hours
    actually worked.
    """
    title: str = Field(..., min_length=1, max_length=256)
    description: str | None = Field(None, max_length=10_000)
    price: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    payment_type: PaymentType = PaymentType.FIXED
    hourly_rate: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @model_validator(mode="after")
    def check_hourly_rate(self) -> "JobCreate":
        if self.payment_type == PaymentType.HOURLY and self.hourly_rate is None:
            raise ValueError("hourly_rate is required for HOURLY jobs")
        return self


class JobUpdate(BaseModel):
    """Poster edits an open job. Only the fields sent are changed."""
    title: str | None = Field(None, min_length=1, max_length=256)
    description: str | None = Field(None, max_length=10_000)
    price: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    hourly_rate: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)
    start_time: datetime | None = None
    end_time: datetime | None = None


class ExtraTimeRequest(BaseModel):
    hours: Decimal = Field(..., gt=0, max_digits=6, decimal_places=2)
    reason: str | None = Field(None, max_length=2048)


class ExtraTimeDecision(BaseModel):
    approved: bool


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str | None
    price: Decimal
    final_price: Decimal | None
    payment_type: str
    hourly_rate: Decimal | None
    poster_id: uuid.UUID
    assigned_helper_id: uuid.UUID | None
    accepted_counter_offer_id: uuid.UUID | None
    job_status: str
    has_active_offers: bool = False
    is_active: bool
    start_time: datetime | None
    end_time: datetime | None
    actual_start_time: datetime | None
    actual_end_time: datetime | None
    actual_hours: Decimal | None
    extra_time_requested: Decimal | None
    extra_time_reason: str | None
    extra_time_requested_at: datetime | None
    extra_time_approved: bool
    extra_time_decided_at: datetime | None
    total_approved_hours: Decimal
    payment_intent_id: str | None
    held_amount: Decimal | None
    created_at: datetime
    updated_at: datetime

    @field_validator("job_status", "payment_type", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class TimelineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    posted_at: datetime | None
    counter_offer_at: datetime | None
    confirmed_at: datetime | None
    ongoing_at: datetime | None
    completed_at: datetime | None
    paid_at: datetime | None


class StatusChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: str | None
    to_status: str
    actor_id: uuid.UUID | None
    created_at: datetime

    @field_validator("from_status", "to_status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str | None:
        if v is None:
            return None
        return _enum_value(v)
