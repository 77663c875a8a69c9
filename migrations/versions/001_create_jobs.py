"""Create jobs, job_timelines and job_status_history tables.

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("posted", "confirmed", "ongoing", "completed", "paid", "cancelled")


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("final_price", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "payment_type",
            sa.Enum("FIXED", "HOURLY", name="paymenttype"),
            nullable=False,
            server_default="FIXED",
        ),
        sa.Column("hourly_rate", sa.Numeric(12, 2), nullable=True),
        sa.Column("poster_id", sa.Uuid(), nullable=False),
        sa.Column("assigned_helper_id", sa.Uuid(), nullable=True),
        sa.Column("accepted_counter_offer_id", sa.Uuid(), nullable=True, unique=True),
        sa.Column(
            "job_status",
            sa.Enum(*JOB_STATUSES, name="jobstatus"),
            nullable=False,
            server_default="posted",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_hours", sa.Numeric(8, 2), nullable=True),
        sa.Column("extra_time_requested", sa.Numeric(6, 2), nullable=True),
        sa.Column("extra_time_reason", sa.Text(), nullable=True),
        sa.Column("extra_time_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extra_time_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("extra_time_decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_approved_hours", sa.Numeric(8, 2), nullable=False, server_default="0"),
        sa.Column("payment_intent_id", sa.String(256), nullable=True),
        sa.Column("held_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_poster_id", "jobs", ["poster_id"])
    op.create_index("ix_jobs_assigned_helper_id", "jobs", ["assigned_helper_id"])
    op.create_index("ix_jobs_job_status", "jobs", ["job_status"])

    op.create_table(
        "job_timelines",
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("counter_offer_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ongoing_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_job_timelines_completed_at", "job_timelines", ["completed_at"])

    # jobstatus already exists from the jobs table
    existing_status = postgresql.ENUM(*JOB_STATUSES, name="jobstatus", create_type=False)
    op.create_table(
        "job_status_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_status", existing_status, nullable=True),
        sa.Column("to_status", existing_status, nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_job_status_history_job_id", "job_status_history", ["job_id"])


def downgrade() -> None:
    op.drop_table("job_status_history")
    op.drop_table("job_timelines")
    op.drop_table("jobs")
    op.execute("DROP TYPE IF EXISTS jobstatus")
    op.execute("DROP TYPE IF EXISTS paymenttype")
