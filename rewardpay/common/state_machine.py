"""Failure-record state machine enforced by the recovery scheduler."""

from rewardpay.common.errors import InvalidTransition

PENDING = "pending"
PROCESSING = "processing"
RETRY_SCHEDULED = "retry_scheduled"
FAILED = "failed"
MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
SUCCESS = "success"
ALREADY_CLAIMED = "already_claimed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PROCESSING, RETRY_SCHEDULED, FAILED},
    RETRY_SCHEDULED: {PROCESSING, RETRY_SCHEDULED, FAILED},
    PROCESSING: {SUCCESS, RETRY_SCHEDULED, MAX_RETRIES_EXCEEDED, FAILED, ALREADY_CLAIMED},
    # Manual redrive only.
    FAILED: {RETRY_SCHEDULED},
    MAX_RETRIES_EXCEEDED: {RETRY_SCHEDULED},
    SUCCESS: set(),
    ALREADY_CLAIMED: set(),
}

TERMINAL_STATES = frozenset({FAILED, MAX_RETRIES_EXCEEDED, SUCCESS, ALREADY_CLAIMED})
RUNNABLE_STATES = frozenset({PENDING, RETRY_SCHEDULED})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
