"""Ledger reconciliation.

Records terminal claim outcomes with one idempotent upsert per batch keyed on
`(user_key, event_id)`. A successful row is never overwritten.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select, tuple_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from rewardpay.common.kv import Coordinator, Keys
from rewardpay.common.logging import logger
from rewardpay.common.metrics import ledger_reconciliation_gaps_total
from rewardpay.services.intake.schemas import Claim
from rewardpay.services.ledger.models import LedgerEntry


class LedgerService:
    """Owns `ledger_entries`; consulted before every payout."""

    def __init__(self, session_factory, coordinator: Coordinator, unit_amount: int) -> None:
        self.session_factory = session_factory
        self.coordinator = coordinator
        self.unit_amount = unit_amount

    def has_success(self, user_key: str, event_id: str) -> LedgerEntry | None:
        with self.session_factory() as db:
            return db.execute(
                select(LedgerEntry).where(
                    LedgerEntry.user_key == user_key,
                    LedgerEntry.event_id == event_id,
                    LedgerEntry.success.is_(True),
                )
            ).scalar_one_or_none()

    def paid_pairs(self, claims: list[Claim]) -> dict[tuple[str, str], str | None]:
        """Return `{(user_key, event_id): tx_hash}` for pairs that are already paid."""

        if not claims:
            return {}
        pairs = {(claim.user_key, claim.event_id) for claim in claims}
        with self.session_factory() as db:
            rows = db.execute(
                select(LedgerEntry.user_key, LedgerEntry.event_id, LedgerEntry.tx_hash).where(
                    tuple_(LedgerEntry.user_key, LedgerEntry.event_id).in_(list(pairs)),
                    LedgerEntry.success.is_(True),
                )
            ).all()
        return {(row.user_key, row.event_id): row.tx_hash for row in rows}

    def _rows(self, claims: list[Claim], tx_hash: str | None, success: bool) -> list[dict]:
        now = datetime.now(timezone.utc)
        rows: dict[tuple[str, str], dict] = {}
        for claim in claims:
            rows[(claim.user_key, claim.event_id)] = {
                "entry_id": str(uuid4()),
                "user_key": claim.user_key,
                "event_id": claim.event_id,
                "recipient_address": claim.recipient_address,
                "source": claim.source,
                "amount": str(self.unit_amount),
                "tx_hash": tx_hash,
                "success": success,
                "metadata": claim.metadata,
                "claimed_at": now if success else None,
            }
        return list(rows.values())

    def _upsert(self, rows: list[dict]) -> None:
        with self.session_factory() as db:
            dialect = db.get_bind().dialect.name
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            table = LedgerEntry.__table__
            stmt = insert(table).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.user_key, table.c.event_id],
                set_={
                    "recipient_address": stmt.excluded.recipient_address,
                    "source": stmt.excluded.source,
                    "amount": stmt.excluded.amount,
                    "tx_hash": stmt.excluded.tx_hash,
                    "success": stmt.excluded.success,
                    "metadata": stmt.excluded["metadata"],
                    "claimed_at": stmt.excluded.claimed_at,
                    "updated_at": func.now(),
                },
                # Success is sticky: never overwrite a paid row.
                where=table.c.success.is_(False),
            )
            db.execute(stmt)
            db.commit()

    async def record_outcome(self, claims: list[Claim], tx_hash: str | None, success: bool) -> bool:
        """Upsert terminal outcomes; returns False when the write was deferred.

        A failed write is not surfaced to the caller: after a confirmed payment
        the claim is paid regardless, so the gap is logged and queued for
        `repair_gaps`.
        """

        if not claims:
            return True
        rows = self._rows(claims, tx_hash, success)
        try:
            self._upsert(rows)
            return True
        except SQLAlchemyError as exc:
            ledger_reconciliation_gaps_total.inc()
            logger.error(
                "ledger_reconciliation_gap tx_hash=%s success=%s claims=%s error=%s",
                tx_hash,
                success,
                [claim.claim_id for claim in claims],
                exc,
            )
            await self.coordinator.push(
                Keys.LEDGER_GAPS,
                {
                    "claims": [claim.model_dump(mode="json") for claim in claims],
                    "tx_hash": tx_hash,
                    "success": success,
                },
            )
            return False

    async def repair_gaps(self, limit: int = 100) -> dict:
        """Re-apply deferred ledger writes; stops at the first failing write."""

        repaired = 0
        while repaired < limit:
            items = await self.coordinator.pop_front(Keys.LEDGER_GAPS, 1)
            if not items:
                break
            item = items[0]
            claims = [Claim.model_validate(raw) for raw in item["claims"]]
            try:
                self._upsert(self._rows(claims, item.get("tx_hash"), bool(item.get("success"))))
            except SQLAlchemyError as exc:
                await self.coordinator.push_front(Keys.LEDGER_GAPS, [item])
                logger.error("ledger_gap_repair_failed tx_hash=%s error=%s", item.get("tx_hash"), exc)
                break
            repaired += 1
        remaining = await self.coordinator.length(Keys.LEDGER_GAPS)
        logger.info("ledger_gap_repair repaired=%s remaining=%s", repaired, remaining)
        return {"repaired": repaired, "remaining": remaining}
