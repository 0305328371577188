"""Startup-time config logging with secrets redacted."""

from eth_account import Account

from rewardpay.common.config import Settings
from rewardpay.common.logging import logger

_SECRET_FIELDS = frozenset({"api_key", "qstash_token", "postgres_dsn", "wallets"})


def wallet_addresses(cfg: Settings) -> dict[str, list[str]]:
    """Public hot-wallet addresses per purpose, derived from the configured keys."""

    addresses: dict[str, list[str]] = {}
    for wallet in cfg.wallets:
        addresses.setdefault(wallet.purpose, []).append(Account.from_key(wallet.private_key).address)
    return addresses


def log_startup_config(cfg: Settings) -> None:
    """Log the effective settings for quick troubleshooting."""

    config = {name: "<redacted>" if name in _SECRET_FIELDS else value for name, value in cfg.model_dump().items()}
    config["wallets"] = wallet_addresses(cfg)
    logger.info("startup_config=%s", config)
