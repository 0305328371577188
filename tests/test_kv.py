"""Coordinator primitives: FIFO queues and token-owned TTL locks."""

import asyncio

import pytest

from rewardpay.common.kv import Keys


@pytest.mark.asyncio
async def test_lock_is_exclusive_until_released(coordinator):
    token = await coordinator.acquire("lock:a", 30)
    assert token is not None
    assert await coordinator.acquire("lock:a", 30) is None

    assert await coordinator.release("lock:a", token)
    assert await coordinator.acquire("lock:a", 30) is not None


@pytest.mark.asyncio
async def test_release_with_foreign_token_keeps_lock(coordinator):
    """A holder whose lock expired must not delete its successor's lock."""

    token = await coordinator.acquire("lock:a", 30)
    assert not await coordinator.release("lock:a", "someone-else")
    assert await coordinator.exists("lock:a")
    assert await coordinator.release("lock:a", token)


@pytest.mark.asyncio
async def test_lock_expires_after_ttl(coordinator):
    assert await coordinator.acquire("lock:a", 0.05) is not None
    await asyncio.sleep(0.1)
    assert await coordinator.acquire("lock:a", 30) is not None


@pytest.mark.asyncio
async def test_concurrent_acquire_has_one_winner(coordinator):
    tokens = await asyncio.gather(*(coordinator.acquire("lock:a", 30) for _ in range(10)))
    assert len([token for token in tokens if token is not None]) == 1


@pytest.mark.asyncio
async def test_pop_front_is_fifo_and_bounded(coordinator):
    key = Keys.queue("web")
    for index in range(5):
        await coordinator.push(key, {"n": index})

    assert await coordinator.pop_front(key, 3) == [{"n": 0}, {"n": 1}, {"n": 2}]
    assert await coordinator.length(key) == 2
    assert await coordinator.pop_front(key, 3) == [{"n": 3}, {"n": 4}]
    assert await coordinator.pop_front(key, 3) == []


@pytest.mark.asyncio
async def test_push_front_restores_original_order(coordinator):
    key = Keys.queue("web")
    await coordinator.push(key, {"n": 3})
    await coordinator.push_front(key, [{"n": 1}, {"n": 2}])

    assert await coordinator.range(key) == [{"n": 1}, {"n": 2}, {"n": 3}]


@pytest.mark.asyncio
async def test_trim_drops_head_items(coordinator):
    key = Keys.queue("web")
    for index in range(4):
        await coordinator.push(key, {"n": index})
    await coordinator.trim(key, 2)

    assert await coordinator.range(key) == [{"n": 2}, {"n": 3}]


@pytest.mark.asyncio
async def test_json_values_and_ttl(coordinator):
    await coordinator.set_json("claim:status:x", {"status": "paid"}, ttl_seconds=60)
    assert await coordinator.get_json("claim:status:x") == {"status": "paid"}
    assert 0 < await coordinator.ttl_remaining("claim:status:x") <= 60
    assert await coordinator.get_json("claim:status:missing") is None
    assert await coordinator.ttl_remaining("claim:status:missing") is None


def test_wallet_lock_key_is_case_insensitive():
    assert Keys.wallet_lock("0xABCdef") == Keys.wallet_lock("0xabcDEF") == "wallet-lock:0xabcdef"
