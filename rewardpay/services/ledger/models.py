"""Ledger database models.

This table is the source of truth for "did this user get paid for this
event"; the chain is the source of truth for the payment itself.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from rewardpay.common.db import Base, JSONType


class LedgerEntry(Base):
    """Per-user-per-event payout outcome; immutable once `success` is true."""

    __tablename__ = "ledger_entries"
    __table_args__ = (UniqueConstraint("user_key", "event_id", name="uq_ledger_user_event"),)

    entry_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_key: Mapped[str] = mapped_column(String, index=True)
    event_id: Mapped[str] = mapped_column(String, index=True)
    recipient_address: Mapped[str] = mapped_column(String(42))
    source: Mapped[str] = mapped_column(String)
    amount: Mapped[str] = mapped_column(String(78))
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    claim_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
