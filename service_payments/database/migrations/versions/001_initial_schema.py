"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create service_requests table
    op.create_table(
        "service_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_name", sa.String(length=255), nullable=False),
        sa.Column("user_email", sa.String(length=255), nullable=False),
        sa.Column("user_phone", sa.String(length=50), nullable=False),
        sa.Column("service_name", sa.String(length=255), nullable=False),
        sa.Column("category_name", sa.String(length=255), nullable=False),
        sa.Column("request_type", sa.String(length=20), nullable=False),
        sa.Column("requested_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("total_price", sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=30), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_type", sa.String(length=20), nullable=False),
        sa.Column("require_sequential_payment", sa.Boolean(), nullable=False),
        sa.Column("payment_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "payment_status IN ('Pending', 'Success', 'Failure', 'Cancelled')",
            name="valid_payment_status",
        ),
        sa.CheckConstraint(
            "payment_method IN ('Cash On Delivery', 'Online Payment')",
            name="valid_payment_method",
        ),
        sa.CheckConstraint("payment_type IN ('full', 'milestone')", name="valid_payment_type"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_service_requests_user_email"), "service_requests", ["user_email"], unique=False
    )
    op.create_index(
        op.f("ix_service_requests_payment_status"),
        "service_requests",
        ["payment_status"],
        unique=False,
    )

    # Create milestones table
    op.create_table(
        "milestones",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("service_request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("percentage", sa.Numeric(precision=7, scale=4), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("completion_status", sa.String(length=20), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_required", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_milestone_amount"),
        sa.CheckConstraint(
            "completion_status IN ('NotStarted', 'InProgress', 'Completed')",
            name="valid_completion_status",
        ),
        sa.ForeignKeyConstraint(
            ["service_request_id"], ["service_requests.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_milestones_service_request_id"),
        "milestones",
        ["service_request_id"],
        unique=False,
    )
    op.create_index(
        "idx_milestones_request_sequence",
        "milestones",
        ["service_request_id", "sequence"],
        unique=False,
    )

    # Create payment_links table
    op.create_table(
        "payment_links",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("url", sa.String(length=512), nullable=False),
        sa.Column("service_request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("generated_by", sa.String(length=255), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_expired", sa.Boolean(), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(
            ["service_request_id"], ["service_requests.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_payment_links_token"), "payment_links", ["token"], unique=True)
    op.create_index(
        op.f("ix_payment_links_service_request_id"),
        "payment_links",
        ["service_request_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_links_milestone_id"), "payment_links", ["milestone_id"], unique=False
    )

    # Create payment_events table
    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("service_request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_payment_events_service_request_id",
        "payment_events",
        ["service_request_id"],
        unique=False,
    )
    op.create_index(
        "idx_payment_events_correlation_id",
        "payment_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index("idx_payment_events_type", "payment_events", ["event_type"], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_payment_events_type", table_name="payment_events")
    op.drop_index("idx_payment_events_correlation_id", table_name="payment_events")
    op.drop_index("idx_payment_events_service_request_id", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index(op.f("ix_payment_links_milestone_id"), table_name="payment_links")
    op.drop_index(op.f("ix_payment_links_service_request_id"), table_name="payment_links")
    op.drop_index(op.f("ix_payment_links_token"), table_name="payment_links")
    op.drop_table("payment_links")
    op.drop_index("idx_milestones_request_sequence", table_name="milestones")
    op.drop_index(op.f("ix_milestones_service_request_id"), table_name="milestones")
    op.drop_table("milestones")
    op.drop_index(op.f("ix_service_requests_payment_status"), table_name="service_requests")
    op.drop_index(op.f("ix_service_requests_user_email"), table_name="service_requests")
    op.drop_table("service_requests")
