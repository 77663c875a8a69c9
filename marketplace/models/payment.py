"""Payment ledger and per-user payment profile models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base


class TransactionType(enum.Enum):
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    PAYOUT = "payout"
    COMMISSION = "commission"
    REFUND = "refund"
    EXTRA_TIME_CHARGE = "extra_time_charge"


class PaymentTransaction(Base):
    """Append-only ledger. Never update or delete rows."""
    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="succeeded")
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(256), nullable=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class PaymentProfile(Base):
    """Gateway identifiers for a user, on either side of a job.

    Posters need ``customer_id`` + ``default_payment_method`` for holds; helpers
    need an onboarded ``payout_account_id`` to receive transfers.
    """
    __tablename__ = "payment_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    default_payment_method: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payout_account_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payout_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
