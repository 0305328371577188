"""reject updates that unset a successful payout

Revision ID: 0002_sticky_success
Revises: 0001_ledger
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_sticky_success"
down_revision = "0001_ledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_ledger_success_reversal()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF OLD.success AND (NOT NEW.success OR NEW.tx_hash IS DISTINCT FROM OLD.tx_hash) THEN
                RAISE EXCEPTION 'ledger entry % is paid; success and tx_hash are immutable', OLD.entry_id;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_sticky_success
        BEFORE UPDATE ON ledger_entries
        FOR EACH ROW
        EXECUTE FUNCTION prevent_ledger_success_reversal();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_sticky_success ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS prevent_ledger_success_reversal();")
