from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RedriveRequest(BaseModel):
    """Payload accepted by `POST /internal/failures/redrive`."""

    ids: list[str] = Field(default_factory=list)
    statuses: list[str] = Field(default_factory=list)


class FailureView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    claim_id: str
    user_key: str
    event_id: str
    recipient_address: str
    source: str
    status: str
    attempt: int
    schedule: str
    next_retry_at: datetime | None = None
    last_error: str | None = None
    error_history: list = Field(default_factory=list)
    tx_hash: str | None = None
