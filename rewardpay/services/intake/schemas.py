"""Claim shapes shared by intake, batching, recovery and the ledger."""

import time
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


class ClaimRequest(BaseModel):
    """Inbound payout request."""

    user_key: str = Field(min_length=1, max_length=128)
    recipient_address: str = Field(min_length=1, max_length=64)
    event_id: str = Field(min_length=1, max_length=128)
    source: str = Field(min_length=1, max_length=32)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Claim(BaseModel):
    """One accepted request as stored in a batch queue."""

    claim_id: str
    user_key: str
    recipient_address: str
    event_id: str
    source: str
    enqueued_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_request(cls, req: ClaimRequest, recipient_address: str) -> "Claim":
        enqueued_ns = time.time_ns()
        return cls(
            claim_id=f"{recipient_address}:{req.event_id}:{enqueued_ns}",
            user_key=req.user_key,
            recipient_address=recipient_address,
            event_id=req.event_id,
            source=req.source,
            enqueued_at=datetime.fromtimestamp(enqueued_ns / 1e9, tz=timezone.utc),
            metadata=req.metadata,
        )

    @property
    def pair(self) -> tuple[str, str]:
        return (self.user_key, self.event_id)


PayoutStatus = Literal["paid", "already_claimed", "retry_scheduled", "failed", "processing"]


class PayoutResult(BaseModel):
    """What a caller learns about one claim."""

    claim_id: str
    status: PayoutStatus
    tx_hash: str | None = None
    failure_id: str | None = None
    error: str | None = None

