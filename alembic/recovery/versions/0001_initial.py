"""initial recovery schema

Revision ID: 0001_recovery
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_recovery"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "failure_records",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("claim_id", sa.String(), nullable=False),
        sa.Column("user_key", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("recipient_address", sa.String(length=42), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("schedule", sa.String(length=16), nullable=False, server_default="batch"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_history", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failure_records_claim_id", "failure_records", ["claim_id"])
    op.create_index("ix_failure_records_user_key", "failure_records", ["user_key"])
    op.create_index("ix_failure_records_event_id", "failure_records", ["event_id"])
    op.create_index("ix_failure_records_source", "failure_records", ["source"])
    op.create_index("ix_failure_records_status", "failure_records", ["status"])
    op.create_index("ix_failure_records_next_retry_at", "failure_records", ["next_retry_at"])
    # Stale sweeps scan by status and age.
    op.create_index("ix_failure_records_status_updated_at", "failure_records", ["status", "updated_at"])


def downgrade() -> None:
    op.drop_index("ix_failure_records_status_updated_at", table_name="failure_records")
    op.drop_index("ix_failure_records_next_retry_at", table_name="failure_records")
    op.drop_index("ix_failure_records_status", table_name="failure_records")
    op.drop_index("ix_failure_records_source", table_name="failure_records")
    op.drop_index("ix_failure_records_event_id", table_name="failure_records")
    op.drop_index("ix_failure_records_user_key", table_name="failure_records")
    op.drop_index("ix_failure_records_claim_id", table_name="failure_records")
    op.drop_table("failure_records")
