"""Ledger upserts: sticky success, paid-pair lookup and deferred-write repair."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from rewardpay.common.kv import Keys
from rewardpay.services.ledger.models import LedgerEntry

from conftest import make_claim


def _entry(session_factory, user_key: str, event_id: str = "event-1") -> LedgerEntry:
    with session_factory() as db:
        return db.execute(
            select(LedgerEntry).where(LedgerEntry.user_key == user_key, LedgerEntry.event_id == event_id)
        ).scalar_one()


@pytest.mark.asyncio
async def test_success_is_sticky(services, session_factory):
    claim = make_claim("alice")
    assert await services.ledger.record_outcome([claim], "0xpaid", True)
    assert await services.ledger.record_outcome([claim], None, False)
    assert await services.ledger.record_outcome([claim], "0xother", True)

    entry = _entry(session_factory, "alice")
    assert entry.success is True
    assert entry.tx_hash == "0xpaid"
    assert entry.amount == str(420 * 10**18)
    assert entry.claimed_at is not None


@pytest.mark.asyncio
async def test_failure_row_is_upgraded_by_later_success(services, session_factory):
    claim = make_claim("bob", event_id="event-2")
    await services.ledger.record_outcome([claim], None, False)
    assert services.ledger.has_success("bob", "event-2") is None

    await services.ledger.record_outcome([claim], "0xlater", True)
    assert services.ledger.has_success("bob", "event-2").tx_hash == "0xlater"
    with session_factory() as db:
        assert len(db.execute(select(LedgerEntry)).scalars().all()) == 1


@pytest.mark.asyncio
async def test_paid_pairs_only_reports_successful_pairs(services):
    paid, failed, unknown = make_claim("a"), make_claim("b"), make_claim("c")
    await services.ledger.record_outcome([paid], "0xaa", True)
    await services.ledger.record_outcome([failed], None, False)

    assert services.ledger.paid_pairs([paid, failed, unknown]) == {("a", "event-1"): "0xaa"}
    assert services.ledger.paid_pairs([]) == {}


@pytest.mark.asyncio
async def test_metadata_is_stored(services, session_factory):
    claim = make_claim("meta").model_copy(update={"metadata": {"campaign": "launch"}})
    await services.ledger.record_outcome([claim], "0xmeta", True)

    assert _entry(session_factory, "meta").claim_metadata == {"campaign": "launch"}


@pytest.mark.asyncio
async def test_write_failure_becomes_repairable_gap(services, coordinator, monkeypatch):
    ledger = services.ledger
    claims = [make_claim("gap-1"), make_claim("gap-2")]

    def unavailable(rows):
        raise OperationalError("INSERT INTO ledger_entries", {}, Exception("connection refused"))

    monkeypatch.setattr(ledger, "_upsert", unavailable)
    assert await ledger.record_outcome(claims, "0xgap", True) is False
    assert await coordinator.length(Keys.LEDGER_GAPS) == 1
    assert await ledger.repair_gaps() == {"repaired": 0, "remaining": 1}

    monkeypatch.undo()
    assert await ledger.repair_gaps() == {"repaired": 1, "remaining": 0}
    assert ledger.has_success("gap-1", "event-1").tx_hash == "0xgap"
    assert ledger.has_success("gap-2", "event-1").tx_hash == "0xgap"


@pytest.mark.asyncio
async def test_repair_respects_limit(services, coordinator, monkeypatch):
    ledger = services.ledger

    def unavailable(rows):
        raise OperationalError("INSERT INTO ledger_entries", {}, Exception("connection refused"))

    monkeypatch.setattr(ledger, "_upsert", unavailable)
    for index in range(3):
        await ledger.record_outcome([make_claim(f"user-{index}")], f"0x{index}", True)
    monkeypatch.undo()

    assert await ledger.repair_gaps(limit=2) == {"repaired": 2, "remaining": 1}
    assert await ledger.repair_gaps() == {"repaired": 1, "remaining": 0}
