"""Claim intake and queue accumulation."""

import asyncio
from datetime import datetime, timedelta, timezone

from web3 import Web3

from rewardpay.common.config import Settings
from rewardpay.common.errors import (
    AlreadyClaimed,
    ClaimAlreadyPending,
    ErrorKind,
    InvalidAddress,
    ProcessingTimeout,
    UnknownSource,
)
from rewardpay.common.kv import Coordinator, Keys
from rewardpay.common.logging import claim_id_ctx, logger, source_ctx
from rewardpay.common.metrics import (
    claim_wait_timeouts_total,
    claims_enqueued_total,
    claims_rejected_total,
    queue_depth,
)
from rewardpay.services.batch.trigger import BatchTrigger
from rewardpay.services.intake.outcomes import OutcomeBoard
from rewardpay.services.intake.schemas import Claim, ClaimRequest, PayoutResult
from rewardpay.services.ledger.service import LedgerService
from rewardpay.services.recovery.service import RecoveryService


class ClaimIntakeService:
    """Accepts claims, queues them per source and waits for their outcome."""

    def __init__(
        self,
        coordinator: Coordinator,
        ledger: LedgerService,
        trigger: BatchTrigger,
        recovery: RecoveryService,
        board: OutcomeBoard,
        cfg: Settings,
    ) -> None:
        self.coordinator = coordinator
        self.ledger = ledger
        self.trigger = trigger
        self.recovery = recovery
        self.board = board
        self.cfg = cfg
        self._triggers: set[asyncio.Task] = set()

    def _validate(self, req: ClaimRequest) -> str:
        if not Web3.is_address(req.recipient_address):
            claims_rejected_total.labels(source=req.source, reason="invalid_address").inc()
            raise InvalidAddress(req.recipient_address)
        if req.source not in self.cfg.claim_sources:
            claims_rejected_total.labels(source="unknown", reason="unknown_source").inc()
            raise UnknownSource(req.source)
        return Web3.to_checksum_address(req.recipient_address)

    async def accept(self, req: ClaimRequest) -> tuple[Claim, asyncio.Future]:
        """Validate and queue one claim; returns it with its outcome future.

        Raises `AlreadyClaimed` when the pair is paid and `ClaimAlreadyPending`
        while another claim for the pair is queued or being retried.
        """

        recipient = self._validate(req)
        paid = self.ledger.has_success(req.user_key, req.event_id)
        if paid is not None:
            claims_rejected_total.labels(source=req.source, reason="already_claimed").inc()
            raise AlreadyClaimed(req.user_key, req.event_id, paid.tx_hash)

        marker = await self.coordinator.acquire(
            Keys.inflight(req.user_key, req.event_id), self.cfg.inflight_marker_ttl_seconds
        )
        if marker is None:
            claims_rejected_total.labels(source=req.source, reason="pending").inc()
            raise ClaimAlreadyPending(req.user_key, req.event_id)

        claim = Claim.from_request(req, recipient)
        claim_id_ctx.set(claim.claim_id)
        source_ctx.set(claim.source)
        future = self.board.register(claim.claim_id)
        try:
            depth = await self.coordinator.push(Keys.queue(claim.source), claim.model_dump(mode="json"))
        except Exception:
            self.board.discard(claim.claim_id)
            await self.coordinator.release(Keys.inflight(req.user_key, req.event_id), marker)
            raise
        claims_enqueued_total.labels(source=claim.source).inc()
        queue_depth.labels(source=claim.source).set(depth)
        logger.info("claim_enqueued user_key=%s event_id=%s depth=%s", claim.user_key, claim.event_id, depth)
        return claim, future

    async def enqueue(self, req: ClaimRequest) -> PayoutResult:
        """Queue a claim and wait for it to resolve.

        Raises `ProcessingTimeout` when nothing is known after the waiter
        timeout; the claim stays queued and may still be paid.
        """

        claim, future = await self.accept(req)
        self._schedule_trigger(claim.source)
        result = await self.board.wait(
            claim.claim_id, future, self.cfg.waiter_timeout_seconds, self.cfg.waiter_poll_seconds
        )
        if result is not None:
            return result

        paid = self.ledger.has_success(claim.user_key, claim.event_id)
        if paid is not None:
            return PayoutResult(claim_id=claim.claim_id, status="paid", tx_hash=paid.tx_hash)
        claim_wait_timeouts_total.labels(source=claim.source).inc()
        logger.warning("claim_wait_timeout waited_s=%s", self.cfg.waiter_timeout_seconds)
        raise ProcessingTimeout(claim.claim_id, self.cfg.waiter_timeout_seconds)

    def _schedule_trigger(self, source: str) -> None:
        # The batch runs beside the waiter so its timeout bounds the request.
        task = asyncio.create_task(self.trigger.maybe_trigger(source))
        self._triggers.add(task)
        task.add_done_callback(lambda done: self._trigger_done(source, done))

    def _trigger_done(self, source: str, task: asyncio.Task) -> None:
        self._triggers.discard(task)
        if task.cancelled():
            logger.warning("batch_trigger_cancelled source=%s", source)
        elif task.exception() is not None:
            logger.error("batch_trigger_failed source=%s error=%s", source, task.exception())

    async def drain(self) -> None:
        """Wait for batch triggers started by `enqueue` to finish."""

        while self._triggers:
            await asyncio.gather(*list(self._triggers), return_exceptions=True)

    async def pending_claim(self, user_key: str, event_id: str) -> dict:
        """Whether the pair is paid, or has a claim queued or retrying."""

        paid = self.ledger.has_success(user_key, event_id)
        return {
            "user_key": user_key,
            "event_id": event_id,
            "paid": paid is not None,
            "tx_hash": paid.tx_hash if paid is not None else None,
            "pending": paid is None and await self.coordinator.exists(Keys.inflight(user_key, event_id)),
        }

    async def queue_status(self) -> dict:
        sources = {}
        for source in self.cfg.claim_sources:
            depth = await self.coordinator.length(Keys.queue(source))
            queue_depth.labels(source=source).set(depth)
            sources[source] = {
                "depth": depth,
                "timer_armed": await self.coordinator.exists(Keys.timer(source)),
                "locked": await self.coordinator.exists(Keys.batch_lock(source)),
            }
        return {
            "store_ok": await self.coordinator.ping(),
            "sources": sources,
            "ledger_gaps": await self.coordinator.length(Keys.LEDGER_GAPS),
            "inflight_claims": await self.coordinator.count_keys(Keys.INFLIGHT_PATTERN),
        }

    async def sweep_stale_queue(self, source: str) -> int:
        """Move claims queued longer than `stale_queue_seconds` to failure records.

        Runs under the source batch lock so it never races a batch pop.
        """

        lock_key = Keys.batch_lock(source)
        token = await self.coordinator.acquire(lock_key, self.cfg.batch_lock_ttl_seconds)
        if token is None:
            return 0
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.cfg.stale_queue_seconds)
            items = await self.coordinator.range(Keys.queue(source))
            claims = [Claim.model_validate(item) for item in items]
            # Queues are FIFO, so stale claims form a prefix.
            stale = []
            for claim in claims:
                if claim.enqueued_at >= cutoff:
                    break
                stale.append(claim)
            if not stale:
                return 0
            # Records first: a crash here leaves the claims queued, not lost.
            await self.recovery.record_failures(stale, "claim stale in batch queue", ErrorKind.TRANSIENT)
            await self.coordinator.trim(Keys.queue(source), len(stale))
            logger.warning("stale_claims_moved source=%s count=%s", source, len(stale))
            return len(stale)
        finally:
            await self.coordinator.release(lock_key, token)
