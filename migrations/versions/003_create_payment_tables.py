"""Create payment_transactions ledger and payment_profiles tables.

Revision ID: 003
Revises: 002
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "type",
            sa.Enum(
                "authorization", "capture", "payout", "commission", "refund", "extra_time_charge",
                name="transactiontype",
            ),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(32), nullable=False, server_default="succeeded"),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("reference_number", sa.String(256), nullable=True),
        sa.Column("order_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payment_transactions_order_id", "payment_transactions", ["order_id"])
    op.create_index("ix_payment_transactions_user_id", "payment_transactions", ["user_id"])

    op.create_table(
        "payment_profiles",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.String(256), nullable=True),
        sa.Column("default_payment_method", sa.String(256), nullable=True),
        sa.Column("payout_account_id", sa.String(256), nullable=True),
        sa.Column("payout_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("payment_profiles")
    op.drop_table("payment_transactions")
    op.execute("DROP TYPE IF EXISTS transactiontype")
