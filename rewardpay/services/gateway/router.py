"""Dispatch of delayed-job callbacks to the component that owns each kind."""

from rewardpay.common.errors import WalletBusy
from rewardpay.common.jobs import EnsureAllowanceJob, Job, ProcessBatchJob, RetryClaimJob
from rewardpay.common.logging import logger
from rewardpay.services.batch.trigger import BatchTrigger
from rewardpay.services.executor.service import ExecutionEngine
from rewardpay.services.recovery.service import RecoveryService
from rewardpay.services.wallets.pool import WalletPool, WalletLease


class JobRouter:
    def __init__(
        self, trigger: BatchTrigger, recovery: RecoveryService, engine: ExecutionEngine, pool: WalletPool
    ) -> None:
        self.trigger = trigger
        self.recovery = recovery
        self.engine = engine
        self.pool = pool

    async def handle(self, job: Job) -> dict:
        if isinstance(job, ProcessBatchJob):
            report = await self.trigger.trigger_batch(job.source)
            return {"kind": job.kind, "outcome": report.outcome, "tx_hash": report.tx_hash}
        if isinstance(job, RetryClaimJob):
            outcome = await self.recovery.process_retry(job)
            return {"kind": job.kind, "outcome": outcome}
        if isinstance(job, EnsureAllowanceJob):
            approvals = await self.ensure_allowances(job.purpose)
            return {"kind": job.kind, "outcome": "ok", "approvals": approvals}
        raise TypeError(f"unhandled job kind: {type(job).__name__}")

    async def ensure_allowances(self, purpose: str) -> list[str]:
        """Top up the allowance of every wallet of `purpose` that is free now.

        Leases are held until the end so each lease lands on a different wallet.
        """

        leases: list[WalletLease] = []
        approvals: list[str] = []
        try:
            for _ in self.pool.wallets(purpose):
                try:
                    lease = await self.pool.lease(purpose)
                except WalletBusy:
                    break
                leases.append(lease)
                tx_hash = await self.engine.ensure_allowance(lease)
                if tx_hash:
                    approvals.append(tx_hash)
        finally:
            for lease in leases:
                await self.pool.release(lease)
        logger.info("allowances_checked purpose=%s wallets=%s approvals=%s", purpose, len(leases), len(approvals))
        return approvals
