"""Hot-wallet pool with exclusive, TTL-bounded leases.

A lease is one `SET NX PX` on `wallet-lock:{address}`; at most one unexpired
lease exists per wallet. Release is advisory: a crashed holder's lease simply
expires.
"""

import random
import time
from dataclasses import dataclass, field

from eth_account import Account
from eth_account.signers.local import LocalAccount

from rewardpay.common.config import WalletConfig
from rewardpay.common.errors import ConfigurationError, WalletBusy
from rewardpay.common.kv import Coordinator, Keys
from rewardpay.common.logging import logger
from rewardpay.common.metrics import wallet_busy_total, wallet_leases_total


@dataclass(frozen=True)
class HotWallet:
    purpose: str
    account: LocalAccount = field(repr=False)
    airdrop_contract: str

    @property
    def address(self) -> str:
        return self.account.address

    @classmethod
    def from_config(cls, cfg: WalletConfig) -> "HotWallet":
        return cls(
            purpose=cfg.purpose,
            account=Account.from_key(cfg.private_key),
            airdrop_contract=cfg.airdrop_contract,
        )


@dataclass(frozen=True)
class WalletLease:
    wallet: HotWallet
    lease_key: str
    token: str
    expires_at: float

    @property
    def wallet_id(self) -> str:
        return self.wallet.address

    @property
    def purpose(self) -> str:
        return self.wallet.purpose


class WalletPool:
    """Groups wallets by purpose and hands out exclusive leases."""

    def __init__(
        self,
        coordinator: Coordinator,
        wallets: list[HotWallet],
        lease_ttl_seconds: float,
        busy_retry_seconds: tuple[int, int] = (5, 15),
    ) -> None:
        self.coordinator = coordinator
        self.lease_ttl_seconds = lease_ttl_seconds
        self.busy_retry_seconds = busy_retry_seconds
        self._by_purpose: dict[str, list[HotWallet]] = {}
        for wallet in wallets:
            self._by_purpose.setdefault(wallet.purpose, []).append(wallet)

    def validate(self, purposes: list[str]) -> None:
        """Fail fast at startup when a purpose has no wallet."""

        missing = [purpose for purpose in purposes if not self._by_purpose.get(purpose)]
        if missing:
            raise ConfigurationError("no hot wallet configured", {"purposes": missing})

    def wallets(self, purpose: str) -> list[HotWallet]:
        return list(self._by_purpose.get(purpose, []))

    async def lease(self, purpose: str) -> WalletLease:
        """Lease any free wallet for `purpose` or raise `WalletBusy` at once."""

        candidates = self.wallets(purpose)
        random.shuffle(candidates)
        for wallet in candidates:
            key = Keys.wallet_lock(wallet.address)
            token = await self.coordinator.acquire(key, self.lease_ttl_seconds)
            if token is None:
                continue
            wallet_leases_total.labels(purpose=purpose).inc()
            logger.info("wallet_leased purpose=%s wallet=%s ttl_s=%s", purpose, wallet.address, self.lease_ttl_seconds)
            return WalletLease(
                wallet=wallet,
                lease_key=key,
                token=token,
                expires_at=time.time() + self.lease_ttl_seconds,
            )
        wallet_busy_total.labels(purpose=purpose).inc()
        raise WalletBusy(purpose)

    async def release(self, lease: WalletLease) -> None:
        released = await self.coordinator.release(lease.lease_key, lease.token)
        if not released:
            # Lease expired and may already belong to someone else.
            logger.warning("wallet_lease_lost wallet=%s purpose=%s", lease.wallet_id, lease.purpose)
        else:
            logger.info("wallet_released wallet=%s purpose=%s", lease.wallet_id, lease.purpose)

    def busy_delay(self) -> int:
        """Jittered delay before trying a busy purpose again."""

        low, high = self.busy_retry_seconds
        return random.randint(low, high)

    async def status(self, purpose: str) -> list[dict]:
        """Which wallets of `purpose` are currently leased, and for how long."""

        report = []
        for wallet in self.wallets(purpose):
            remaining = await self.coordinator.ttl_remaining(Keys.wallet_lock(wallet.address))
            report.append({"address": wallet.address, "leased": remaining is not None, "ttl_seconds": remaining})
        return report
