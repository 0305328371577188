"""Wallet pool leasing and startup validation."""

import asyncio

import pytest

from rewardpay.common.errors import ConfigurationError, WalletBusy
from rewardpay.services.wallets.pool import WalletPool

from conftest import WEB_WALLET


@pytest.mark.asyncio
async def test_lease_is_exclusive_per_wallet(services):
    pool = services.pool
    lease = await pool.lease("web")
    assert lease.wallet_id == WEB_WALLET
    assert lease.purpose == "web"

    with pytest.raises(WalletBusy):
        await pool.lease("web")

    await pool.release(lease)
    again = await pool.lease("web")
    assert again.token != lease.token


@pytest.mark.asyncio
async def test_purposes_have_separate_wallets(services):
    web = await services.pool.lease("web")
    mini_app = await services.pool.lease("mini_app")
    assert web.wallet_id != mini_app.wallet_id


@pytest.mark.asyncio
async def test_concurrent_leases_have_one_winner(services):
    results = await asyncio.gather(*(services.pool.lease("web") for _ in range(5)), return_exceptions=True)

    leases = [result for result in results if not isinstance(result, BaseException)]
    assert len(leases) == 1
    assert sum(isinstance(result, WalletBusy) for result in results) == 4


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_and_stale_release_is_harmless(coordinator, services):
    pool = WalletPool(coordinator, services.pool.wallets("web"), lease_ttl_seconds=0.05)
    first = await pool.lease("web")
    await asyncio.sleep(0.1)
    second = await pool.lease("web")

    await pool.release(first)
    with pytest.raises(WalletBusy):
        await pool.lease("web")
    await pool.release(second)


@pytest.mark.asyncio
async def test_status_reports_leased_wallets(services):
    lease = await services.pool.lease("web")
    [status] = await services.pool.status("web")
    assert status["address"] == lease.wallet_id
    assert status["leased"] is True
    assert 0 < status["ttl_seconds"] <= services.cfg.wallet_lease_ttl_seconds

    await services.pool.release(lease)
    [status] = await services.pool.status("web")
    assert status == {"address": lease.wallet_id, "leased": False, "ttl_seconds": None}


def test_validate_rejects_purpose_without_wallet(services):
    services.pool.validate(["web", "mini_app"])
    with pytest.raises(ConfigurationError) as exc_info:
        services.pool.validate(["web", "telegram"])
    assert exc_info.value.details == {"purposes": ["telegram"]}


def test_unknown_purpose_has_no_wallets(services):
    assert services.pool.wallets("telegram") == []


def test_busy_delay_is_jittered_within_bounds(services):
    delays = {services.pool.busy_delay() for _ in range(200)}
    assert delays <= set(range(5, 16))
    assert len(delays) > 1
