"""Transaction execution engine.

Pays one batch with a single aggregated airdrop transaction from a leased hot
wallet. The nonce and gas price are read fresh for every attempt, so a retry
replaces rather than queues behind an earlier submission.

A receipt timeout does not mean the transaction failed. Before each new
attempt, and before giving up, the receipts of every earlier submission are
looked up; a mined success ends the batch without another send, and a nonce
that moved past an unresolved submission makes the outcome unknown.
"""

import asyncio
import time
from dataclasses import dataclass, field

from rewardpay.common.config import Settings
from rewardpay.common.errors import (
    BatchExecutionError,
    ErrorKind,
    InsufficientFunds,
    TransientChainError,
    classify_chain_error,
)
from rewardpay.common.logging import logger
from rewardpay.common.metrics import tx_attempts_total, tx_confirm_seconds
from rewardpay.common.tracing import tracer
from rewardpay.services.executor.chain import ChainGateway, Receipt
from rewardpay.services.intake.schemas import Claim
from rewardpay.services.wallets.pool import WalletLease


@dataclass
class TxAttempt:
    attempt_number: int
    nonce: int | None = None
    gas_price: int | None = None
    tx_hash: str | None = None
    confirmed_block: int | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "attempt_number": self.attempt_number,
            "nonce": self.nonce,
            "gas_price": self.gas_price,
            "tx_hash": self.tx_hash,
            "confirmed_block": self.confirmed_block,
            "error": self.error,
        }


@dataclass
class TxResult:
    tx_hash: str
    block_number: int
    attempts: list[TxAttempt] = field(default_factory=list)


class ExecutionEngine:
    def __init__(self, chain: ChainGateway, cfg: Settings) -> None:
        self.chain = chain
        self.cfg = cfg
        self.unit_amount = cfg.unit_amount

    def gas_limit(self, claim_count: int) -> int:
        return self.cfg.gas_limit_base + claim_count * self.cfg.gas_limit_per_claim

    def escalated_gas_price(self, network_price: int | None, attempt_index: int) -> int:
        """Network price (or the fallback) raised by the per-attempt multiplier."""

        base = network_price or self.cfg.fallback_gas_price_wei
        percent = self.cfg.fee_base_percent + attempt_index * self.cfg.fee_step_percent
        return base * percent // 100

    def worst_case_seconds(self) -> float:
        """Upper bound on one `execute` call: approval plus every inline attempt."""

        attempts = self.cfg.inline_tx_attempts
        delays = sum(self.cfg.tx_retry_delay_seconds * index for index in range(1, attempts))
        receipt_waits = (attempts + 1) * self.cfg.tx_receipt_timeout_seconds
        return float(receipt_waits + delays)

    async def _check_funds(self, address: str, required_tokens: int) -> None:
        native = await self.chain.native_balance(address)
        if native < self.cfg.min_native_balance_wei:
            raise InsufficientFunds(
                "insufficient native balance for gas",
                {"wallet": address, "have": native, "need": self.cfg.min_native_balance_wei},
            )
        tokens = await self.chain.token_balance(address)
        if tokens < required_tokens:
            raise InsufficientFunds(
                "insufficient reward token balance",
                {"wallet": address, "have": tokens, "need": required_tokens},
            )

    async def ensure_allowance(self, lease: WalletLease, required: int | None = None) -> str | None:
        """Approve the airdrop contract when its allowance is below `required`.

        Returns the approval tx hash, or None when no approval was needed.
        """

        wallet = lease.wallet
        required = required if required is not None else self.cfg.batch_size * self.unit_amount
        current = await self.chain.allowance(wallet.address, wallet.airdrop_contract)
        if current >= required:
            return None

        amount = self.cfg.approval_amount * 10**self.cfg.token_decimals
        nonce = await self.chain.nonce(wallet.address)
        gas_price = self.escalated_gas_price(await self.chain.gas_price(), 0)
        tx_hash = await self.chain.send_approve(wallet.account, wallet.airdrop_contract, amount, nonce, gas_price)
        logger.info("approval_submitted wallet=%s tx_hash=%s allowance=%s", wallet.address, tx_hash, current)
        receipt = await self.chain.wait_for_receipt(tx_hash, self.cfg.tx_receipt_timeout_seconds)
        if not receipt.succeeded:
            tx_attempts_total.labels(kind="approve", result="reverted").inc()
            raise TransientChainError("approval reverted", {"tx_hash": tx_hash})
        tx_attempts_total.labels(kind="approve", result="confirmed").inc()
        return tx_hash

    async def _preflight(self, claims: list[Claim], lease: WalletLease) -> None:
        required = len(claims) * self.unit_amount
        try:
            await self._check_funds(lease.wallet.address, required)
            await self.ensure_allowance(lease, required)
        except Exception as exc:
            kind = classify_chain_error(exc)
            logger.error("batch_preflight_failed wallet=%s kind=%s error=%s", lease.wallet_id, kind.value, exc)
            raise BatchExecutionError(str(exc), kind) from exc

    async def _attempt(self, claims: list[Claim], lease: WalletLease, attempt: TxAttempt) -> TxResult:
        wallet = lease.wallet
        attempt.nonce = await self.chain.nonce(wallet.address)
        attempt.gas_price = self.escalated_gas_price(await self.chain.gas_price(), attempt.attempt_number - 1)
        attempt.tx_hash = await self.chain.send_airdrop(
            wallet.account,
            wallet.airdrop_contract,
            [(claim.recipient_address, self.unit_amount) for claim in claims],
            attempt.nonce,
            attempt.gas_price,
            self.gas_limit(len(claims)),
        )
        logger.info(
            "airdrop_submitted attempt=%s nonce=%s gas_price=%s tx_hash=%s claims=%s",
            attempt.attempt_number,
            attempt.nonce,
            attempt.gas_price,
            attempt.tx_hash,
            len(claims),
        )
        started = time.perf_counter()
        receipt = await self.chain.wait_for_receipt(attempt.tx_hash, self.cfg.tx_receipt_timeout_seconds)
        tx_confirm_seconds.labels(kind="airdrop").observe(time.perf_counter() - started)
        if not receipt.succeeded:
            raise TransientChainError("airdrop reverted", {"tx_hash": attempt.tx_hash})
        attempt.confirmed_block = receipt.block_number
        return TxResult(tx_hash=attempt.tx_hash, block_number=receipt.block_number)

    async def find_confirmed(self, tx_hashes: list[str]) -> Receipt | None:
        """First successful receipt among previously submitted hashes."""

        for tx_hash in tx_hashes:
            receipt = await self.chain.transaction_receipt(tx_hash)
            if receipt is not None and receipt.succeeded:
                return receipt
        return None

    async def _settle_earlier(self, lease: WalletLease, attempts: list[TxAttempt]) -> TxResult | None:
        try:
            return await self._check_earlier(lease, attempts)
        except BatchExecutionError:
            raise
        except Exception as exc:
            logger.error("airdrop_settlement_check_failed wallet=%s error=%s", lease.wallet_id, exc)
            raise BatchExecutionError(
                f"could not resolve earlier airdrop submissions: {exc}", ErrorKind.EXHAUSTED, attempts
            ) from exc

    async def _check_earlier(self, lease: WalletLease, attempts: list[TxAttempt]) -> TxResult | None:
        submitted = [attempt for attempt in attempts if attempt.tx_hash]
        settled_nonces: set[int] = set()
        unresolved: list[TxAttempt] = []
        for attempt in submitted:
            receipt = await self.chain.transaction_receipt(attempt.tx_hash)
            if receipt is None:
                unresolved.append(attempt)
                continue
            if receipt.succeeded:
                attempt.confirmed_block = receipt.block_number
                tx_attempts_total.labels(kind="airdrop", result="confirmed").inc()
                logger.info(
                    "airdrop_confirmed_late attempt=%s tx_hash=%s block=%s",
                    attempt.attempt_number,
                    attempt.tx_hash,
                    receipt.block_number,
                )
                return TxResult(tx_hash=attempt.tx_hash, block_number=receipt.block_number, attempts=attempts)
            settled_nonces.add(attempt.nonce)

        if not unresolved:
            return None
        current = await self.chain.nonce(lease.wallet.address)
        for attempt in unresolved:
            # a mined nonce with no receipt for any of our hashes at that nonce
            if attempt.nonce not in settled_nonces and current > attempt.nonce:
                logger.error(
                    "airdrop_outcome_unknown attempt=%s nonce=%s tx_hash=%s current_nonce=%s",
                    attempt.attempt_number,
                    attempt.nonce,
                    attempt.tx_hash,
                    current,
                )
                raise BatchExecutionError(
                    "nonce advanced past an unconfirmed airdrop; outcome unknown",
                    ErrorKind.EXHAUSTED,
                    attempts,
                )
        return None

    async def execute(self, claims: list[Claim], lease: WalletLease) -> TxResult:
        """Pay every claim in one confirmed transaction or raise `BatchExecutionError`."""

        with tracer.start_as_current_span("batch.execute") as span:
            span.set_attribute("rewardpay.claims", len(claims))
            span.set_attribute("rewardpay.wallet", lease.wallet_id)
            await self._preflight(claims, lease)

            attempts: list[TxAttempt] = []
            for index in range(self.cfg.inline_tx_attempts):
                if index:
                    await asyncio.sleep(self.cfg.tx_retry_delay_seconds * index)
                    settled = await self._settle_earlier(lease, attempts)
                    if settled is not None:
                        span.set_attribute("rewardpay.tx_hash", settled.tx_hash)
                        return settled
                attempt = TxAttempt(attempt_number=index + 1)
                attempts.append(attempt)
                try:
                    result = await self._attempt(claims, lease, attempt)
                except Exception as exc:
                    attempt.error = str(exc)
                    kind = classify_chain_error(exc)
                    tx_attempts_total.labels(kind="airdrop", result=kind.value).inc()
                    logger.warning(
                        "airdrop_attempt_failed attempt=%s kind=%s tx_hash=%s error=%s",
                        attempt.attempt_number,
                        kind.value,
                        attempt.tx_hash,
                        exc,
                    )
                    if kind is ErrorKind.FATAL:
                        raise BatchExecutionError(str(exc), ErrorKind.FATAL, attempts) from exc
                    continue
                tx_attempts_total.labels(kind="airdrop", result="confirmed").inc()
                result.attempts = attempts
                span.set_attribute("rewardpay.tx_hash", result.tx_hash)
                return result

            settled = await self._settle_earlier(lease, attempts)
            if settled is not None:
                span.set_attribute("rewardpay.tx_hash", settled.tx_hash)
                return settled
            raise BatchExecutionError(
                f"airdrop not confirmed after {len(attempts)} attempts: {attempts[-1].error if attempts else ''}",
                ErrorKind.EXHAUSTED,
                attempts,
            )
