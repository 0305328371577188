"""initial ledger schema

Revision ID: 0001_ledger
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("user_key", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("recipient_address", sa.String(length=42), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("amount", sa.String(length=78), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("user_key", "event_id", name="uq_ledger_user_event"),
    )
    op.create_index("ix_ledger_entries_user_key", "ledger_entries", ["user_key"])
    op.create_index("ix_ledger_entries_event_id", "ledger_entries", ["event_id"])
    op.create_index("ix_ledger_entries_tx_hash", "ledger_entries", ["tx_hash"])
    op.create_index("ix_ledger_entries_success", "ledger_entries", ["success"])


def downgrade() -> None:
    op.drop_index("ix_ledger_entries_success", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_tx_hash", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_event_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_user_key", table_name="ledger_entries")
    op.drop_table("ledger_entries")
