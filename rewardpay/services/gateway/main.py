"""HTTP surface for claim intake and the delayed-job callbacks.

Every invocation is stateless: queues, locks and leases live in Redis, records
in PostgreSQL, and anything that must happen later arrives back through
`POST /internal/jobs`.
"""

from contextlib import asynccontextmanager
from dataclasses import asdict
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from rewardpay.common.config import settings
from rewardpay.common.db import SessionLocal
from rewardpay.common.dispatch import QStashDispatcher
from rewardpay.common.errors import AlreadyClaimed, InvalidAddress, ProcessingTimeout, UnknownSource
from rewardpay.common.jobs import parse_job
from rewardpay.common.kv import Coordinator
from rewardpay.common.logging import configure_logging, logger, trace_id_ctx
from rewardpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from rewardpay.common.startup import log_startup_config
from rewardpay.common.tracing import instrument_app, setup_tracing
from rewardpay.services.executor.chain import Web3ChainGateway
from rewardpay.services.gateway.schemas import FailureView, RedriveRequest
from rewardpay.services.gateway.wiring import build_services
from rewardpay.services.intake.schemas import ClaimRequest, PayoutResult

configure_logging()
setup_tracing(settings)
log_startup_config(settings)
services = build_services(
    settings,
    Coordinator.from_url(settings.redis_url),
    Web3ChainGateway(settings.rpc_url, settings.chain_id, settings.token_address),
    QStashDispatcher(
        settings.qstash_url,
        settings.qstash_token,
        f"{settings.public_base_url}/internal/jobs",
        settings.api_key,
    ),
    SessionLocal,
)

PENDING_STATUSES = {"processing", "retry_scheduled"}


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Fail fast on misconfiguration; close shared clients on shutdown."""

    services.validate()
    yield
    await services.intake.drain()
    await services.dispatcher.close()
    await services.coordinator.close()


app = FastAPI(title="RewardPay Gateway", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
            elapsed
        )
        http_requests_total.labels(
            service=settings.service_name, route=route, method=method, status_code=str(status_code)
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _result_response(result: PayoutResult) -> JSONResponse:
    status_code = 202 if result.status in PENDING_STATUSES else 200
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@app.post("/claims")
async def create_claim(
    req: ClaimRequest,
    x_api_key: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    """Queue one claim and wait for its batch.

    200 carries a terminal outcome; 202 means the claim is still queued or
    scheduled for retry and can be polled at `GET /claims/{claim_id}`.
    """

    enforce_api_key(x_api_key)
    trace_id_ctx.set(x_correlation_id or str(uuid4()))
    try:
        result = await services.intake.enqueue(req)
    except (InvalidAddress, UnknownSource) as exc:
        raise HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message}) from exc
    except AlreadyClaimed as exc:
        raise HTTPException(
            status_code=409, detail={"code": exc.code, "message": exc.message, "tx_hash": exc.tx_hash}
        ) from exc
    except ProcessingTimeout as exc:
        result = PayoutResult(claim_id=exc.claim_id, status="processing", error=exc.message)
    return _result_response(result)


@app.get("/claims/status")
async def claim_pair_status(user_key: str, event_id: str, x_api_key: str | None = Header(default=None)):
    """Ledger and pending state of one (user, event) pair."""

    enforce_api_key(x_api_key)
    return await services.intake.pending_claim(user_key, event_id)


@app.get("/claims/{claim_id}", response_model=PayoutResult)
async def get_claim(claim_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    result = await services.board.lookup(claim_id)
    if result is None:
        raise HTTPException(status_code=404, detail="claim outcome not known")
    return result


@app.post("/internal/jobs")
async def handle_job(request: Request, x_api_key: str | None = Header(default=None)):
    """Delayed-dispatch callback; delivery is at-least-once."""

    enforce_api_key(x_api_key)
    try:
        job = parse_job(await request.json())
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    trace_id_ctx.set(request.headers.get("upstash-message-id") or str(uuid4()))
    logger.info("job_received kind=%s", job.kind)
    return await services.router.handle(job)


@app.post("/internal/sweep")
async def sweep(x_api_key: str | None = Header(default=None)):
    """Periodic maintenance: stale queues, lost timers, lost retries, ledger gaps."""

    enforce_api_key(x_api_key)
    stale_claims = {
        source: await services.intake.sweep_stale_queue(source) for source in settings.claim_sources
    }
    return {
        "stale_claims": stale_claims,
        "timers_rearmed": await services.trigger.sweep(),
        "failures": await services.recovery.sweep_stale(),
        "ledger_gaps": await services.ledger.repair_gaps(),
    }


@app.post("/internal/flush")
async def flush(x_api_key: str | None = Header(default=None)):
    """Run a batch for every source now, regardless of queue size."""

    enforce_api_key(x_api_key)
    reports = await services.trigger.flush_all()
    return {"batches": [asdict(report) for report in reports]}


@app.post("/internal/ledger/repair")
async def repair_ledger(limit: int = 100, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return await services.ledger.repair_gaps(limit)


@app.post("/internal/failures/redrive")
async def redrive_failures(req: RedriveRequest, x_api_key: str | None = Header(default=None)):
    """Put failed or exhausted failure records back on the retry path."""

    enforce_api_key(x_api_key)
    redriven = await services.recovery.redrive(ids=req.ids or None, statuses=req.statuses or None)
    return {"redriven": redriven, "count": len(redriven)}


@app.get("/internal/failures", response_model=list[FailureView])
def list_failures(status: str | None = None, limit: int = 100, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return services.recovery.list_failures(status=status, limit=limit)


@app.get("/internal/queues")
async def queue_status(x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return await services.intake.queue_status()


@app.get("/internal/wallets/{purpose}")
async def wallet_status(purpose: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    wallets = await services.pool.status(purpose)
    if not wallets:
        raise HTTPException(status_code=404, detail="no wallets for purpose")
    return {"purpose": purpose, "wallets": wallets}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
async def health():
    """Container health probe endpoint."""

    return {"ok": await services.coordinator.ping()}
