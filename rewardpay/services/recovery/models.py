"""Recovery database models.

One row per claim that could not be paid inline. The row is the durable
handle a delayed `retry_claim` job refers to.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from rewardpay.common.db import Base, JSONType


class FailureRecord(Base):
    """Retry state of one failed claim."""

    __tablename__ = "failure_records"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    claim_id: Mapped[str] = mapped_column(String, index=True)
    user_key: Mapped[str] = mapped_column(String, index=True)
    event_id: Mapped[str] = mapped_column(String, index=True)
    recipient_address: Mapped[str] = mapped_column(String(42))
    source: Mapped[str] = mapped_column(String, index=True)
    claim_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    schedule: Mapped[str] = mapped_column(String(16), default="batch")
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_history: Mapped[list] = mapped_column(JSONType, default=list)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
