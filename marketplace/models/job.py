"""Job SQLAlchemy models: the job row, its milestone timeline and status log."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base


class JobStatus(enum.Enum):
    POSTED = "posted"
    CONFIRMED = "confirmed"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentType(enum.Enum):
    FIXED = "FIXED"
    HOURLY = "HOURLY"


# Valid state transitions
VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.POSTED: {JobStatus.CONFIRMED, JobStatus.CANCELLED},
    JobStatus.CONFIRMED: {JobStatus.ONGOING, JobStatus.CANCELLED},
    JobStatus.ONGOING: {JobStatus.COMPLETED},
    JobStatus.COMPLETED: {JobStatus.PAID},
    JobStatus.PAID: set(),
    JobStatus.CANCELLED: set(),
}

# Timeline milestone reached on entering each status
STATUS_MILESTONES: dict[JobStatus, str] = {
    JobStatus.POSTED: "posted_at",
    JobStatus.CONFIRMED: "confirmed_at",
    JobStatus.ONGOING: "ongoing_at",
    JobStatus.COMPLETED: "completed_at",
    JobStatus.PAID: "paid_at",
}


def _enum(cls: type[enum.Enum]) -> Enum:
    return Enum(cls, values_callable=lambda x: [e.value for e in x])


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    final_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    payment_type: Mapped[PaymentType] = mapped_column(
        _enum(PaymentType), nullable=False, default=PaymentType.FIXED
    )
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    poster_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    assigned_helper_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    # No FK: counter_offers already references jobs, and the accepted offer is never deleted.
    accepted_counter_offer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, nullable=True, unique=True
    )

    job_status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus), nullable=False, default=JobStatus.POSTED, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_hours: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)

    extra_time_requested: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    extra_time_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_time_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    extra_time_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra_time_decided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_approved_hours: Mapped[Decimal] = mapped_column(
        Numeric(8, 2), nullable=False, default=Decimal("0")
    )

    payment_intent_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    held_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class JobTimeline(Base):
    """One row per job. Each milestone is written at most once."""
    __tablename__ = "job_timelines"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True
    )
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    counter_offer_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ongoing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class JobStatusHistory(Base):
    """Append-only status change log. Never update or delete rows."""
    __tablename__ = "job_status_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[JobStatus | None] = mapped_column(_enum(JobStatus), nullable=True)
    to_status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)  # None = system
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
