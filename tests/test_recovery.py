"""Failure recovery: back-off tables, retry jobs, terminal states, redrive and stale sweeps."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from rewardpay.common.errors import BatchExecutionError, ErrorKind
from rewardpay.common.jobs import RetryClaimJob
from rewardpay.common.kv import Keys
from rewardpay.common.state_machine import (
    FAILED,
    MAX_RETRIES_EXCEEDED,
    PROCESSING,
    RETRY_SCHEDULED,
)
from rewardpay.services.recovery.models import FailureRecord
from rewardpay.services.recovery.service import backoff_delay

from conftest import make_claim


async def _failed_claim(services, coordinator, kind=ErrorKind.TRANSIENT, user_key="alice"):
    """A claim whose batch failed, holding its in-flight marker like a real one."""

    claim = make_claim(user_key)
    await coordinator.acquire(Keys.inflight(claim.user_key, claim.event_id), 3600)
    [record] = await services.recovery.record_failures([claim], "airdrop reverted", kind)
    return claim, record


def _record(session_factory, failure_id):
    with session_factory() as db:
        return db.get(FailureRecord, failure_id)


def test_backoff_delay_table():
    schedule = [2, 5, 10, 20]
    assert [backoff_delay(schedule, attempt) for attempt in range(5)] == [120, 300, 600, 1200, None]
    with pytest.raises(ValueError):
        backoff_delay(schedule, -1)


@pytest.mark.asyncio
async def test_batch_failure_creates_scheduled_record(services, coordinator, dispatcher, session_factory):
    claim, record = await _failed_claim(services, coordinator)

    stored = _record(session_factory, record.id)
    assert (stored.status, stored.attempt, stored.schedule) == (RETRY_SCHEDULED, 0, "batch")
    assert stored.error_history[0]["kind"] == "transient"
    assert dispatcher.jobs("retry_claim") == [(RetryClaimJob(failure_id=record.id, attempt=1), 120)]


@pytest.mark.asyncio
async def test_retry_success_pays_and_deletes_record(services, coordinator, chain, session_factory):
    claim, record = await _failed_claim(services, coordinator)

    outcome = await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1))

    assert outcome == "success"
    assert _record(session_factory, record.id) is None
    assert len(chain.airdrops[0]["contents"]) == 1
    assert services.ledger.has_success(claim.user_key, claim.event_id).tx_hash == chain.airdrops[0]["tx_hash"]
    assert not await coordinator.exists(Keys.inflight(claim.user_key, claim.event_id))
    assert (await services.board.lookup(claim.claim_id)).status == "paid"

    # Redelivery after success finds nothing to do.
    assert await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1)) == "missing"
    assert len(chain.airdrops) == 1


@pytest.mark.asyncio
async def test_retry_settles_on_earlier_mined_airdrop_without_resending(
    services, coordinator, chain, session_factory
):
    chain.script = ["unseen"]
    claim = make_claim("alice")
    await coordinator.acquire(Keys.inflight(claim.user_key, claim.event_id), 3600)
    lease = await services.pool.lease(claim.source)
    try:
        with pytest.raises(BatchExecutionError) as exc_info:
            await services.engine.execute([claim], lease)
    finally:
        await services.pool.release(lease)
    [record] = await services.recovery.record_batch_failure([claim], exc_info.value)
    [airdrop] = chain.airdrops
    assert _record(session_factory, record.id).error_history[0]["tx_hashes"] == [airdrop["tx_hash"]]

    chain.confirm(airdrop["tx_hash"])
    outcome = await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1))

    assert outcome == "success"
    assert len(chain.airdrops) == 1
    assert services.ledger.has_success(claim.user_key, claim.event_id).tx_hash == airdrop["tx_hash"]
    assert (await services.board.lookup(claim.claim_id)).tx_hash == airdrop["tx_hash"]


@pytest.mark.asyncio
async def test_success_with_deferred_ledger_write_keeps_record(services, coordinator, session_factory, monkeypatch):
    claim, record = await _failed_claim(services, coordinator)

    async def deferred(claims, tx_hash, success):
        return False

    monkeypatch.setattr(services.ledger, "record_outcome", deferred)
    assert await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1)) == "success"

    stored = _record(session_factory, record.id)
    assert stored.status == "success"
    assert stored.tx_hash is not None
    assert await coordinator.exists(Keys.inflight(claim.user_key, claim.event_id))


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(services, coordinator, chain, dispatcher):
    chain.script = ["revert"] * 3
    _, record = await _failed_claim(services, coordinator)
    job = RetryClaimJob(failure_id=record.id, attempt=1)

    assert await services.recovery.process_retry(job) == RETRY_SCHEDULED
    sent = len(chain.airdrops)
    assert await services.recovery.process_retry(job) == "stale"
    assert len(chain.airdrops) == sent


@pytest.mark.asyncio
async def test_transient_retries_end_in_max_retries_exceeded(
    services, coordinator, chain, dispatcher, session_factory
):
    chain.script = ["revert"] * 12
    claim, record = await _failed_claim(services, coordinator)

    outcomes = [
        await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=attempt))
        for attempt in range(1, 5)
    ]

    assert outcomes == [RETRY_SCHEDULED] * 3 + [MAX_RETRIES_EXCEEDED]
    delays = [delay for _, delay in dispatcher.jobs("retry_claim")]
    assert delays == [120, 40 * 60, 60 * 60, 120 * 60]
    stored = _record(session_factory, record.id)
    assert (stored.status, stored.attempt, stored.schedule) == (MAX_RETRIES_EXCEEDED, 4, "single")
    assert len(stored.error_history) == 5
    assert not await coordinator.exists(Keys.inflight(claim.user_key, claim.event_id))
    assert (await services.board.lookup(claim.claim_id)).status == "failed"


@pytest.mark.asyncio
async def test_fatal_retry_fails_record(services, coordinator, chain, session_factory):
    claim, record = await _failed_claim(services, coordinator)
    chain.native = 0

    assert await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1)) == FAILED
    assert _record(session_factory, record.id).status == FAILED
    assert not await coordinator.exists(Keys.inflight(claim.user_key, claim.event_id))


@pytest.mark.asyncio
async def test_busy_wallet_republishes_same_attempt(services, coordinator, dispatcher, session_factory):
    _, record = await _failed_claim(services, coordinator)
    lease = await services.pool.lease("web")
    job = RetryClaimJob(failure_id=record.id, attempt=1)

    assert await services.recovery.process_retry(job) == "busy"

    republished, delay = dispatcher.jobs("retry_claim")[-1]
    assert republished == job
    assert 5 <= delay <= 15
    stored = _record(session_factory, record.id)
    assert (stored.status, stored.attempt) == (RETRY_SCHEDULED, 0)
    await services.pool.release(lease)


@pytest.mark.asyncio
async def test_pair_paid_elsewhere_resolves_as_already_claimed(services, coordinator, chain, session_factory):
    claim, record = await _failed_claim(services, coordinator)
    await services.ledger.record_outcome([claim], "0xelsewhere", True)

    outcome = await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1))

    assert outcome == "already_claimed"
    assert chain.airdrops == []
    assert _record(session_factory, record.id) is None
    result = await services.board.lookup(claim.claim_id)
    assert (result.status, result.tx_hash) == ("already_claimed", "0xelsewhere")


@pytest.mark.asyncio
async def test_fatal_batch_failure_is_terminal_at_once(services, coordinator, dispatcher, session_factory):
    claim, record = await _failed_claim(services, coordinator, kind=ErrorKind.FATAL)

    assert _record(session_factory, record.id).status == FAILED
    assert dispatcher.jobs("retry_claim") == []
    assert not await coordinator.exists(Keys.inflight(claim.user_key, claim.event_id))
    assert await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1)) == "stale"


@pytest.mark.asyncio
async def test_redrive_puts_failed_record_back_on_retry_path(services, coordinator, dispatcher, session_factory):
    claim, record = await _failed_claim(services, coordinator, kind=ErrorKind.FATAL)

    assert await services.recovery.redrive() == [record.id]

    assert _record(session_factory, record.id).status == RETRY_SCHEDULED
    assert dispatcher.jobs("retry_claim") == [(RetryClaimJob(failure_id=record.id, attempt=1), 0)]
    assert await coordinator.exists(Keys.inflight(claim.user_key, claim.event_id))
    assert await services.recovery.process_retry(RetryClaimJob(failure_id=record.id, attempt=1)) == "success"


@pytest.mark.asyncio
async def test_redrive_skips_pair_with_claim_in_flight(services, coordinator, session_factory):
    claim, record = await _failed_claim(services, coordinator, kind=ErrorKind.FATAL)
    await coordinator.acquire(Keys.inflight(claim.user_key, claim.event_id), 3600)

    assert await services.recovery.redrive(ids=[record.id]) == []
    assert _record(session_factory, record.id).status == FAILED


@pytest.mark.asyncio
async def test_redrive_ignores_non_terminal_statuses(services, coordinator):
    await _failed_claim(services, coordinator)

    assert await services.recovery.redrive(statuses=[RETRY_SCHEDULED]) == []
    assert await services.recovery.redrive() == []


@pytest.mark.asyncio
async def test_sweep_republishes_lost_and_stuck_records(services, coordinator, dispatcher, session_factory):
    _, overdue = await _failed_claim(services, coordinator, user_key="overdue")
    _, stuck = await _failed_claim(services, coordinator, user_key="stuck")
    _, on_time = await _failed_claim(services, coordinator, user_key="on-time")
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    with session_factory() as db:
        db.execute(update(FailureRecord).where(FailureRecord.id == overdue.id).values(next_retry_at=long_ago))
        db.execute(
            update(FailureRecord)
            .where(FailureRecord.id == stuck.id)
            .values(status=PROCESSING, attempt=1, updated_at=long_ago)
        )
        db.commit()
    dispatcher.published.clear()

    assert await services.recovery.sweep_stale() == {"processing": 1, "overdue": 1, "republished": 2}

    republished = {job.failure_id: job.attempt for job, delay in dispatcher.jobs("retry_claim")}
    assert republished == {overdue.id: 1, stuck.id: 2}
    assert _record(session_factory, stuck.id).status == RETRY_SCHEDULED
    assert _record(session_factory, on_time.id).status == RETRY_SCHEDULED


@pytest.mark.asyncio
async def test_list_failures_filters_by_status(services, coordinator):
    await _failed_claim(services, coordinator, user_key="a")
    await _failed_claim(services, coordinator, kind=ErrorKind.FATAL, user_key="b")

    assert len(services.recovery.list_failures()) == 2
    assert [record.user_key for record in services.recovery.list_failures(status=FAILED)] == ["b"]
