"""Delayed-job payloads.

Every callback delivered by the delayed-dispatch service carries exactly one of
these variants, tagged by `kind`. Handlers must be idempotent: delivery is
at-least-once.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class ProcessBatchJob(BaseModel):
    """Batch timer fired (or a busy wallet asked for another try)."""

    kind: Literal["process_batch"] = "process_batch"
    source: str = Field(min_length=1)


class RetryClaimJob(BaseModel):
    """Re-attempt one failure record."""

    kind: Literal["retry_claim"] = "retry_claim"
    failure_id: str = Field(min_length=1)
    attempt: int = Field(ge=1)


class EnsureAllowanceJob(BaseModel):
    """Top up the airdrop-contract allowance for every wallet of a purpose."""

    kind: Literal["ensure_allowance"] = "ensure_allowance"
    purpose: str = Field(min_length=1)


Job = Annotated[Union[ProcessBatchJob, RetryClaimJob, EnsureAllowanceJob], Field(discriminator="kind")]

job_adapter: TypeAdapter[Job] = TypeAdapter(Job)


def parse_job(payload: dict) -> Job:
    """Validate a raw callback body into its job variant."""

    return job_adapter.validate_python(payload)
