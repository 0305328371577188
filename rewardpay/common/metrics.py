"""Prometheus metric definitions shared across the payout components."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


claims_enqueued_total = Counter("claims_enqueued_total", "Claims accepted into a batch queue", ["source"])
claims_rejected_total = Counter("claims_rejected_total", "Claims rejected at intake", ["source", "reason"])
claim_outcomes_total = Counter("claim_outcomes_total", "Claim outcomes published", ["status"])
claim_wait_timeouts_total = Counter(
    "claim_wait_timeouts_total",
    "Callers that stopped waiting before a claim resolved",
    ["source"],
)
queue_depth = Gauge("claim_queue_depth", "Claims waiting in a batch queue", ["source"])

batches_total = Counter("batches_total", "Batches processed by outcome", ["source", "outcome"])
batch_size_claims = Histogram(
    "batch_size_claims",
    "Claims per executed batch",
    ["source"],
    buckets=(1, 2, 5, 10, 20, 50),
)
batch_lock_contention_total = Counter(
    "batch_lock_contention_total",
    "Batch triggers that found the source lock already held",
    ["source"],
)

wallet_busy_total = Counter("wallet_busy_total", "Lease attempts that found every wallet busy", ["purpose"])
wallet_leases_total = Counter("wallet_leases_total", "Wallet leases granted", ["purpose"])

tx_attempts_total = Counter("tx_attempts_total", "Signed transaction submissions", ["kind", "result"])
tx_confirm_seconds = Histogram("tx_confirm_seconds", "Submit-to-receipt latency seconds", ["kind"])

retries_scheduled_total = Counter("retries_scheduled_total", "Failure-record retries scheduled", ["schedule"])
failures_terminal_total = Counter("failures_terminal_total", "Failure records reaching a terminal state", ["status"])
ledger_reconciliation_gaps_total = Counter(
    "ledger_reconciliation_gaps_total",
    "Confirmed payouts whose ledger write failed",
)
jobs_dispatched_total = Counter("jobs_dispatched_total", "Delayed jobs published", ["kind", "result"])

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
