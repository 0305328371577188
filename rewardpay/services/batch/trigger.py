"""Batch trigger and per-source lock coordination.

A batch runs when a source queue reaches `batch_size` or when the delayed
`process_batch` job armed by the first waiting claim fires. Claims are popped
only while the source lock and a wallet lease are both held.
"""

from dataclasses import dataclass, field
from uuid import uuid4

import httpx
from sqlalchemy.exc import SQLAlchemyError

from rewardpay.common.config import Settings
from rewardpay.common.dispatch import Dispatcher
from rewardpay.common.errors import BatchExecutionError, WalletBusy
from rewardpay.common.jobs import ProcessBatchJob
from rewardpay.common.kv import Coordinator, Keys
from rewardpay.common.logging import batch_id_ctx, logger, source_ctx
from rewardpay.common.metrics import batch_lock_contention_total, batch_size_claims, batches_total, queue_depth
from rewardpay.common.tracing import tracer
from rewardpay.services.executor.service import ExecutionEngine
from rewardpay.services.intake.outcomes import OutcomeBoard
from rewardpay.services.intake.schemas import Claim, PayoutResult
from rewardpay.services.ledger.service import LedgerService
from rewardpay.services.recovery.service import RecoveryService
from rewardpay.services.wallets.pool import WalletPool


@dataclass
class BatchReport:
    source: str
    outcome: str
    claims: int = 0
    skipped: int = 0
    tx_hash: str | None = None
    failure_ids: list[str] = field(default_factory=list)


class BatchTrigger:
    def __init__(
        self,
        coordinator: Coordinator,
        pool: WalletPool,
        engine: ExecutionEngine,
        ledger: LedgerService,
        recovery: RecoveryService,
        board: OutcomeBoard,
        dispatcher: Dispatcher,
        cfg: Settings,
    ) -> None:
        self.coordinator = coordinator
        self.pool = pool
        self.engine = engine
        self.ledger = ledger
        self.recovery = recovery
        self.board = board
        self.dispatcher = dispatcher
        self.cfg = cfg

    async def maybe_trigger(self, source: str) -> BatchReport | None:
        """Run a full batch now, or make sure a timer will run a partial one."""

        length = await self.coordinator.length(Keys.queue(source))
        queue_depth.labels(source=source).set(length)
        if length >= self.cfg.batch_size:
            return await self.trigger_batch(source)
        if length > 0:
            await self.arm_timer(source)
        return None

    async def arm_timer(self, source: str) -> bool:
        """Arm the per-source timer once; a failed publish disarms it again."""

        token = await self.coordinator.acquire(Keys.timer(source), self.cfg.batch_timeout_seconds)
        if token is None:
            return False
        try:
            await self.dispatcher.publish(ProcessBatchJob(source=source), delay_seconds=self.cfg.batch_timeout_seconds)
        except httpx.HTTPError as exc:
            await self.coordinator.delete(Keys.timer(source))
            logger.error("batch_timer_publish_failed source=%s error=%s", source, exc)
            return False
        logger.info("batch_timer_armed source=%s delay_s=%s", source, self.cfg.batch_timeout_seconds)
        return True

    async def _recheck(self, source: str) -> None:
        length = await self.coordinator.length(Keys.queue(source))
        queue_depth.labels(source=source).set(length)
        if length >= self.cfg.batch_size:
            try:
                await self.dispatcher.publish(ProcessBatchJob(source=source))
            except httpx.HTTPError as exc:
                logger.error("batch_followup_publish_failed source=%s error=%s", source, exc)
                await self.arm_timer(source)
        elif length > 0:
            await self.arm_timer(source)

    async def _drop_paid(self, claims: list[Claim]) -> tuple[list[Claim], int]:
        """Resolve claims whose pair is already paid, or repeated in this batch."""

        paid = self.ledger.paid_pairs(claims)
        payable: list[Claim] = []
        seen: set[tuple[str, str]] = set()
        for claim in claims:
            if claim.pair in paid or claim.pair in seen:
                await self.board.publish(
                    PayoutResult(claim_id=claim.claim_id, status="already_claimed", tx_hash=paid.get(claim.pair))
                )
                continue
            seen.add(claim.pair)
            payable.append(claim)
        return payable, len(claims) - len(payable)

    async def _requeue(self, source: str, claims: list[Claim]) -> None:
        await self.coordinator.push_front(Keys.queue(source), [claim.model_dump(mode="json") for claim in claims])
        logger.error("batch_requeued source=%s claims=%s", source, len(claims))

    async def trigger_batch(self, source: str) -> BatchReport:
        lock_key = Keys.batch_lock(source)
        lock_token = await self.coordinator.acquire(lock_key, self.cfg.batch_lock_ttl_seconds)
        if lock_token is None:
            batch_lock_contention_total.labels(source=source).inc()
            logger.info("batch_lock_held source=%s", source)
            return BatchReport(source=source, outcome="locked")

        batch_id_ctx.set(uuid4().hex[:12])
        source_ctx.set(source)
        lease = None
        recheck = True
        try:
            try:
                lease = await self.pool.lease(source)
            except WalletBusy:
                delay = self.pool.busy_delay()
                try:
                    await self.dispatcher.publish(ProcessBatchJob(source=source), delay_seconds=delay)
                    recheck = False
                except httpx.HTTPError as exc:
                    logger.error("batch_busy_publish_failed source=%s error=%s", source, exc)
                logger.info("batch_deferred source=%s reason=wallet_busy delay_s=%s", source, delay)
                batches_total.labels(source=source, outcome="busy").inc()
                return BatchReport(source=source, outcome="busy")

            raw = await self.coordinator.pop_front(Keys.queue(source), self.cfg.batch_size)
            await self.coordinator.delete(Keys.timer(source))
            if not raw:
                return BatchReport(source=source, outcome="empty")
            claims = [Claim.model_validate(item) for item in raw]

            try:
                payable, skipped = await self._drop_paid(claims)
            except SQLAlchemyError as exc:
                logger.error("batch_ledger_check_failed source=%s error=%s", source, exc)
                await self._requeue(source, claims)
                recheck = False
                await self.arm_timer(source)
                batches_total.labels(source=source, outcome="requeued").inc()
                return BatchReport(source=source, outcome="requeued", claims=len(claims))
            if not payable:
                batches_total.labels(source=source, outcome="already_claimed").inc()
                return BatchReport(source=source, outcome="already_claimed", skipped=skipped)

            batch_size_claims.labels(source=source).observe(len(payable))
            logger.info("batch_started source=%s claims=%s wallet=%s", source, len(payable), lease.wallet_id)
            with tracer.start_as_current_span("batch.trigger") as span:
                span.set_attribute("rewardpay.source", source)
                try:
                    result = await self.engine.execute(payable, lease)
                except BatchExecutionError as exc:
                    return await self._fail(source, payable, skipped, exc)

            durable = await self.ledger.record_outcome(payable, result.tx_hash, True)
            for claim in payable:
                if durable:
                    await self.coordinator.delete(Keys.inflight(claim.user_key, claim.event_id))
                await self.board.publish(PayoutResult(claim_id=claim.claim_id, status="paid", tx_hash=result.tx_hash))
            batches_total.labels(source=source, outcome="paid").inc()
            logger.info("batch_paid source=%s claims=%s tx_hash=%s", source, len(payable), result.tx_hash)
            return BatchReport(
                source=source, outcome="paid", claims=len(payable), skipped=skipped, tx_hash=result.tx_hash
            )
        finally:
            if lease is not None:
                await self.pool.release(lease)
            await self.coordinator.release(lock_key, lock_token)
            if recheck:
                await self._recheck(source)

    async def _fail(self, source: str, claims: list[Claim], skipped: int, exc: BatchExecutionError) -> BatchReport:
        logger.error("batch_failed source=%s claims=%s kind=%s error=%s", source, len(claims), exc.kind.value, exc)
        try:
            records = await self.recovery.record_batch_failure(claims, exc)
        except SQLAlchemyError as db_exc:
            logger.error("failure_records_unavailable source=%s error=%s", source, db_exc)
            await self._requeue(source, claims)
            batches_total.labels(source=source, outcome="requeued").inc()
            return BatchReport(source=source, outcome="requeued", claims=len(claims), skipped=skipped)
        batches_total.labels(source=source, outcome="failed").inc()
        return BatchReport(
            source=source,
            outcome="failed",
            claims=len(claims),
            skipped=skipped,
            failure_ids=[record.id for record in records],
        )

    async def flush_all(self) -> list[BatchReport]:
        """Run one batch for every configured source regardless of size."""

        return [await self.trigger_batch(source) for source in self.cfg.claim_sources]

    async def sweep(self) -> dict[str, bool]:
        """Re-arm timers for non-empty queues that have none."""

        rearmed = {}
        for source in self.cfg.claim_sources:
            length = await self.coordinator.length(Keys.queue(source))
            queue_depth.labels(source=source).set(length)
            if length == 0 or await self.coordinator.exists(Keys.batch_lock(source)):
                rearmed[source] = False
                continue
            rearmed[source] = await self.arm_timer(source)
        return rearmed
