"""Failure recovery scheduler.

Every claim the batch path could not pay becomes a `FailureRecord` and is
retried on its own by delayed `retry_claim` jobs. Records move through the
failure state machine with optimistic concurrency on `state_version`, so two
deliveries of the same job can never both reach the chain.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
from sqlalchemy import delete, select, update

from rewardpay.common.config import Settings
from rewardpay.common.dispatch import Dispatcher
from rewardpay.common.errors import (
    BatchExecutionError,
    ErrorKind,
    InvalidTransition,
    StaleUpdate,
    WalletBusy,
)
from rewardpay.common.jobs import RetryClaimJob
from rewardpay.common.kv import Coordinator, Keys
from rewardpay.common.logging import claim_id_ctx, logger
from rewardpay.common.metrics import failures_terminal_total, retries_scheduled_total
from rewardpay.common.state_machine import (
    ALREADY_CLAIMED,
    FAILED,
    MAX_RETRIES_EXCEEDED,
    PENDING,
    PROCESSING,
    RETRY_SCHEDULED,
    RUNNABLE_STATES,
    SUCCESS,
    validate_transition,
)
from rewardpay.services.executor.service import ExecutionEngine
from rewardpay.services.intake.outcomes import OutcomeBoard
from rewardpay.services.intake.schemas import Claim, PayoutResult
from rewardpay.services.ledger.service import LedgerService
from rewardpay.services.recovery.models import FailureRecord
from rewardpay.services.wallets.pool import WalletPool

BATCH_SCHEDULE = "batch"
SINGLE_SCHEDULE = "single"


def backoff_delay(schedule_minutes: list[int], attempt: int) -> int | None:
    """Seconds before the retry that follows `attempt` completed attempts.

    Returns None once the table is exhausted, meaning no further retry.
    """

    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if attempt >= len(schedule_minutes):
        return None
    return schedule_minutes[attempt] * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecoveryService:
    """Owns `failure_records` and the retry jobs that drive them."""

    def __init__(
        self,
        session_factory,
        coordinator: Coordinator,
        pool: WalletPool,
        engine: ExecutionEngine,
        ledger: LedgerService,
        board: OutcomeBoard,
        dispatcher: Dispatcher,
        cfg: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.coordinator = coordinator
        self.pool = pool
        self.engine = engine
        self.ledger = ledger
        self.board = board
        self.dispatcher = dispatcher
        self.cfg = cfg

    def _transition(self, db, record: FailureRecord, new_status: str, reason: str, **values) -> None:
        """Apply one validated transition guarded by `(id, status, state_version)`."""

        validate_transition(record.status, new_status)
        from_status = record.status
        current_version = record.state_version
        now = _utcnow()
        result = db.execute(
            update(FailureRecord)
            .where(
                FailureRecord.id == record.id,
                FailureRecord.status == from_status,
                FailureRecord.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=now, **values)
        )
        if result.rowcount != 1:
            raise StaleUpdate(
                f"optimistic concurrency conflict for failure {record.id} (expected version {current_version})"
            )
        record.status = new_status
        record.state_version = current_version + 1
        record.updated_at = now
        for name, value in values.items():
            setattr(record, name, value)
        logger.info(
            "failure_transition failure_id=%s from=%s to=%s reason=%s attempt=%s",
            record.id,
            from_status,
            new_status,
            reason,
            record.attempt,
        )

    @staticmethod
    def _history_entry(attempt: int, error: str, kind: ErrorKind, tx_attempts=None) -> dict:
        tx_attempts = tx_attempts or []
        return {
            "attempt": attempt,
            "error": error,
            "kind": kind.value,
            "at": _utcnow().isoformat(),
            "tx_hashes": [tx.tx_hash for tx in tx_attempts if tx.tx_hash],
            "attempts": [tx.as_dict() for tx in tx_attempts],
        }

    def _history(self, record: FailureRecord, error: str, kind: ErrorKind, tx_attempts=None) -> list:
        return [*(record.error_history or []), self._history_entry(record.attempt, error, kind, tx_attempts)]

    @staticmethod
    def submitted_hashes(record: FailureRecord) -> list[str]:
        """Every airdrop hash sent for this claim on earlier attempts."""

        return [tx_hash for entry in record.error_history or [] for tx_hash in entry.get("tx_hashes", [])]

    @staticmethod
    def to_claim(record: FailureRecord) -> Claim:
        return Claim(
            claim_id=record.claim_id,
            user_key=record.user_key,
            recipient_address=record.recipient_address,
            event_id=record.event_id,
            source=record.source,
            enqueued_at=record.created_at or _utcnow(),
            metadata=record.claim_metadata or {},
        )

    async def _clear_inflight(self, claim: Claim) -> None:
        await self.coordinator.delete(Keys.inflight(claim.user_key, claim.event_id))

    async def _publish_retry(self, record: FailureRecord, delay_seconds: int) -> None:
        job = RetryClaimJob(failure_id=record.id, attempt=record.attempt + 1)
        try:
            await self.dispatcher.publish(job, delay_seconds=delay_seconds)
        except httpx.HTTPError as exc:
            # The record stays retry_scheduled; sweep_stale republishes lost jobs.
            logger.error("retry_publish_failed failure_id=%s error=%s", record.id, exc)
            return
        retries_scheduled_total.labels(schedule=record.schedule).inc()

    async def record_failures(
        self, claims: list[Claim], message: str, kind: ErrorKind, tx_attempts=None
    ) -> list[FailureRecord]:
        """Persist one record per claim and publish its outcome.

        Raises SQLAlchemyError when the records cannot be stored; the caller
        still owns the claims in that case.
        """

        fatal = kind is ErrorKind.FATAL
        status = FAILED if fatal else RETRY_SCHEDULED
        validate_transition(PENDING, status)
        delay = None if fatal else backoff_delay(self.cfg.batch_retry_schedule_minutes, 0)
        now = _utcnow()
        entry = self._history_entry(0, message, kind, tx_attempts)
        records = [
            FailureRecord(
                id=str(uuid4()),
                claim_id=claim.claim_id,
                user_key=claim.user_key,
                event_id=claim.event_id,
                recipient_address=claim.recipient_address,
                source=claim.source,
                claim_metadata=claim.metadata,
                status=status,
                state_version=0,
                attempt=0,
                schedule=BATCH_SCHEDULE,
                next_retry_at=now + timedelta(seconds=delay) if delay is not None else None,
                last_error=message,
                error_history=[dict(entry)],
                created_at=now,
                updated_at=now,
            )
            for claim in claims
        ]
        with self.session_factory() as db:
            db.add_all(records)
            db.commit()
        logger.warning(
            "failure_records_created count=%s status=%s kind=%s error=%s", len(records), status, kind.value, message
        )

        if fatal:
            failures_terminal_total.labels(status=FAILED).inc(len(records))
            await self.ledger.record_outcome(claims, None, False)
        for claim, record in zip(claims, records):
            if fatal:
                await self._clear_inflight(claim)
                await self.board.publish(
                    PayoutResult(claim_id=claim.claim_id, status="failed", failure_id=record.id, error=message)
                )
            else:
                await self._publish_retry(record, delay)
                await self.board.publish(
                    PayoutResult(
                        claim_id=claim.claim_id, status="retry_scheduled", failure_id=record.id, error=message
                    )
                )
        return records

    async def record_batch_failure(self, claims: list[Claim], error: BatchExecutionError) -> list[FailureRecord]:
        return await self.record_failures(claims, error.message, error.kind, error.attempts)

    async def process_retry(self, job: RetryClaimJob) -> str:
        """Run one delivery of a `retry_claim` job; returns what happened."""

        with self.session_factory() as db:
            record = db.get(FailureRecord, job.failure_id)
        if record is None:
            logger.info("retry_skipped failure_id=%s reason=missing", job.failure_id)
            return "missing"
        if record.status not in RUNNABLE_STATES or job.attempt <= record.attempt:
            logger.info(
                "retry_skipped failure_id=%s reason=stale status=%s job_attempt=%s record_attempt=%s",
                record.id,
                record.status,
                job.attempt,
                record.attempt,
            )
            return "stale"
        claim_id_ctx.set(record.claim_id)

        try:
            lease = await self.pool.lease(record.source)
        except WalletBusy:
            delay = self.pool.busy_delay()
            # Same job again: a busy wallet does not consume an attempt.
            await self.dispatcher.publish(job, delay_seconds=delay)
            logger.info("retry_deferred failure_id=%s reason=wallet_busy delay_s=%s", record.id, delay)
            return "busy"

        try:
            with self.session_factory() as db:
                record = db.get(FailureRecord, job.failure_id)
                try:
                    self._transition(db, record, PROCESSING, "retry_started", attempt=job.attempt)
                except (StaleUpdate, InvalidTransition) as exc:
                    db.rollback()
                    logger.info("retry_skipped failure_id=%s reason=race error=%s", job.failure_id, exc)
                    return "stale"
                db.commit()

            claim = self.to_claim(record)
            paid = self.ledger.has_success(claim.user_key, claim.event_id)
            if paid is not None:
                self._finish(record, ALREADY_CLAIMED, "ledger_already_paid", delete_row=True, tx_hash=paid.tx_hash)
                failures_terminal_total.labels(status=ALREADY_CLAIMED).inc()
                await self._clear_inflight(claim)
                await self.board.publish(
                    PayoutResult(claim_id=claim.claim_id, status="already_claimed", tx_hash=paid.tx_hash)
                )
                return ALREADY_CLAIMED

            prior = self.submitted_hashes(record)
            try:
                mined = await self.engine.find_confirmed(prior) if prior else None
            except Exception as exc:
                logger.error("retry_receipt_lookup_failed failure_id=%s error=%s", record.id, exc)
                error = BatchExecutionError(f"could not check earlier submissions: {exc}", ErrorKind.TRANSIENT)
                return await self._after_failed_retry(record, claim, error)
            if mined is not None:
                logger.info("retry_found_mined_airdrop failure_id=%s tx_hash=%s", record.id, mined.tx_hash)
                return await self._paid(record, claim, mined.tx_hash, "earlier_submission_mined")

            try:
                result = await self.engine.execute([claim], lease)
            except BatchExecutionError as exc:
                return await self._after_failed_retry(record, claim, exc)
            return await self._paid(record, claim, result.tx_hash, "retry_paid")
        finally:
            await self.pool.release(lease)

    async def _paid(self, record: FailureRecord, claim: Claim, tx_hash: str, reason: str) -> str:
        durable = await self.ledger.record_outcome([claim], tx_hash, True)
        # A row whose ledger write was deferred stays as `success` for reconciliation.
        self._finish(record, SUCCESS, reason, delete_row=durable, tx_hash=tx_hash)
        failures_terminal_total.labels(status=SUCCESS).inc()
        if durable:
            await self._clear_inflight(claim)
        await self.board.publish(PayoutResult(claim_id=claim.claim_id, status="paid", tx_hash=tx_hash))
        return SUCCESS

    def _finish(self, record: FailureRecord, status: str, reason: str, delete_row: bool, **values) -> None:
        with self.session_factory() as db:
            self._transition(db, record, status, reason, **values)
            if delete_row:
                db.execute(delete(FailureRecord).where(FailureRecord.id == record.id))
            db.commit()

    async def _after_failed_retry(self, record: FailureRecord, claim: Claim, exc: BatchExecutionError) -> str:
        history = self._history(record, exc.message, exc.kind, exc.attempts)
        delay = None
        if exc.kind is ErrorKind.FATAL:
            status = FAILED
        else:
            delay = backoff_delay(self.cfg.single_retry_schedule_minutes, record.attempt)
            status = RETRY_SCHEDULED if delay is not None else MAX_RETRIES_EXCEEDED

        values = {"last_error": exc.message, "error_history": history, "schedule": SINGLE_SCHEDULE}
        if delay is not None:
            values["next_retry_at"] = _utcnow() + timedelta(seconds=delay)
        with self.session_factory() as db:
            self._transition(db, record, status, f"retry_{exc.kind.value}", **values)
            db.commit()

        if status == RETRY_SCHEDULED:
            await self._publish_retry(record, delay)
            await self.board.publish(
                PayoutResult(claim_id=claim.claim_id, status="retry_scheduled", failure_id=record.id, error=exc.message)
            )
            return status

        failures_terminal_total.labels(status=status).inc()
        await self.ledger.record_outcome([claim], None, False)
        await self._clear_inflight(claim)
        await self.board.publish(
            PayoutResult(claim_id=claim.claim_id, status="failed", failure_id=record.id, error=exc.message)
        )
        return status

    async def redrive(self, ids: list[str] | None = None, statuses: list[str] | None = None) -> list[str]:
        """Put failed or exhausted records back on the retry path.

        A record whose pair already has another claim in flight is left alone.
        """

        allowed = (FAILED, MAX_RETRIES_EXCEEDED)
        statuses = [status for status in (statuses or allowed) if status in allowed]
        if not statuses:
            return []
        redriven: list[FailureRecord] = []
        with self.session_factory() as db:
            stmt = select(FailureRecord).where(FailureRecord.status.in_(statuses))
            if ids:
                stmt = stmt.where(FailureRecord.id.in_(ids))
            for record in db.execute(stmt).scalars().all():
                marker = await self.coordinator.acquire(
                    Keys.inflight(record.user_key, record.event_id), self.cfg.inflight_marker_ttl_seconds
                )
                if marker is None:
                    logger.info("redrive_skipped failure_id=%s reason=claim_in_flight", record.id)
                    continue
                self._transition(db, record, RETRY_SCHEDULED, "manual_redrive", next_retry_at=_utcnow())
                redriven.append(record)
            db.commit()
        for record in redriven:
            await self._publish_retry(record, 0)
        return [record.id for record in redriven]

    async def sweep_stale(self) -> dict:
        """Re-publish jobs for records whose invocation or dispatch was lost."""

        cutoff = _utcnow() - timedelta(seconds=self.cfg.stale_processing_seconds)
        revived: list[FailureRecord] = []
        with self.session_factory() as db:
            stuck = (
                db.execute(
                    select(FailureRecord).where(
                        FailureRecord.status == PROCESSING, FailureRecord.updated_at < cutoff
                    )
                )
                .scalars()
                .all()
            )
            overdue = (
                db.execute(
                    select(FailureRecord).where(
                        FailureRecord.status == RETRY_SCHEDULED, FailureRecord.next_retry_at < cutoff
                    )
                )
                .scalars()
                .all()
            )
            for record in [*stuck, *overdue]:
                try:
                    self._transition(db, record, RETRY_SCHEDULED, "stale_sweep", next_retry_at=_utcnow())
                except StaleUpdate:
                    continue
                revived.append(record)
            db.commit()
        for record in revived:
            await self._publish_retry(record, 0)
        if revived:
            logger.warning("stale_failures_revived processing=%s overdue=%s", len(stuck), len(overdue))
        return {"processing": len(stuck), "overdue": len(overdue), "republished": len(revived)}

    def list_failures(self, status: str | None = None, limit: int = 100) -> list[FailureRecord]:
        with self.session_factory() as db:
            stmt = select(FailureRecord).order_by(FailureRecord.created_at.desc()).limit(limit)
            if status:
                stmt = stmt.where(FailureRecord.status == status)
            return list(db.execute(stmt).scalars().all())
