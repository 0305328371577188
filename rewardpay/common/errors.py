"""Exception taxonomy shared by intake, execution and recovery.

Every failure belongs to one `ErrorKind`; the kind decides whether the caller
retries inline, reschedules, or gives up.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """How a failure is handled, independent of where it was raised."""

    FATAL = "fatal"
    TRANSIENT = "transient"
    CONTENTION = "contention"
    EXHAUSTED = "exhausted"


class RewardPayError(Exception):
    """Base exception for the payout engine."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", details: dict[str, Any] | None = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RewardPayError):
    """Startup-time misconfiguration; never raised mid-flight."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class InvalidAddress(RewardPayError):
    def __init__(self, address: str):
        super().__init__(f"invalid recipient address: {address}", "INVALID_ADDRESS", {"address": address})


class UnknownSource(RewardPayError):
    def __init__(self, source: str):
        super().__init__(f"unknown claim source: {source}", "UNKNOWN_SOURCE", {"source": source})


class AlreadyClaimed(RewardPayError):
    """A successful payout already exists for this (user, event) pair."""

    def __init__(self, user_key: str, event_id: str, tx_hash: str | None = None):
        super().__init__(
            f"user {user_key} already claimed event {event_id}",
            "ALREADY_CLAIMED",
            {"user_key": user_key, "event_id": event_id, "tx_hash": tx_hash},
        )
        self.tx_hash = tx_hash


class ClaimAlreadyPending(AlreadyClaimed):
    """Another claim for the same pair is queued or being retried."""

    def __init__(self, user_key: str, event_id: str):
        super().__init__(user_key, event_id)
        self.code = "CLAIM_PENDING"
        self.message = f"claim for user {user_key} event {event_id} is already in flight"
        self.args = (self.message,)


class ProcessingTimeout(RewardPayError):
    """The caller stopped waiting; the claim may still be paid later."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, claim_id: str, waited_seconds: float):
        super().__init__(
            f"claim {claim_id} not resolved within {waited_seconds:.0f}s; poll the ledger",
            "PROCESSING_TIMEOUT",
            {"claim_id": claim_id},
        )
        self.claim_id = claim_id


class WalletBusy(RewardPayError):
    kind = ErrorKind.CONTENTION

    def __init__(self, purpose: str):
        super().__init__(f"all wallets busy for {purpose}", "WALLET_BUSY", {"purpose": purpose})


class InsufficientFunds(RewardPayError):
    """Hot wallet lacks gas currency or reward tokens."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, "INSUFFICIENT_FUNDS", details)


class TransientChainError(RewardPayError):
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, "TRANSIENT_CHAIN_ERROR", details)


class BatchExecutionError(RewardPayError):
    """A batch could not be paid inline.

    `kind` is FATAL for causes that must not be retried and EXHAUSTED when the
    inline attempt budget ran out on transient causes.
    """

    def __init__(self, message: str, kind: ErrorKind, attempts: list | None = None):
        super().__init__(message, "BATCH_EXECUTION_FAILED", {"kind": kind.value})
        self.kind = kind
        self.attempts = attempts or []

    @property
    def retryable(self) -> bool:
        return self.kind is not ErrorKind.FATAL


class InvalidTransition(ValueError):
    """Raised when a failure-record transition is not allowed."""


class StaleUpdate(RuntimeError):
    """Optimistic concurrency conflict on a failure record."""


_FATAL_MARKERS = (
    "insufficient funds",
    "exceeds balance",
    "invalid sender",
)


def classify_chain_error(exc: BaseException) -> ErrorKind:
    """Map an RPC/web3 failure to FATAL or TRANSIENT.

    Fee too low, nonce races, timeouts and congestion reverts all land in
    TRANSIENT, as does anything unrecognised; the recovery scheduler caps the
    total attempt count.
    """

    if isinstance(exc, RewardPayError):
        return exc.kind if exc.kind in (ErrorKind.FATAL, ErrorKind.TRANSIENT) else ErrorKind.TRANSIENT
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    message = str(exc).lower()
    if any(marker in message for marker in _FATAL_MARKERS):
        return ErrorKind.FATAL
    return ErrorKind.TRANSIENT
