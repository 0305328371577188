"""Object graph shared by the HTTP surface and the job callbacks."""

from dataclasses import dataclass

from rewardpay.common.config import Settings
from rewardpay.common.dispatch import Dispatcher
from rewardpay.common.errors import ConfigurationError
from rewardpay.common.kv import Coordinator
from rewardpay.services.batch.trigger import BatchTrigger
from rewardpay.services.executor.chain import ChainGateway
from rewardpay.services.executor.service import ExecutionEngine
from rewardpay.services.gateway.router import JobRouter
from rewardpay.services.intake.outcomes import OutcomeBoard
from rewardpay.services.intake.service import ClaimIntakeService
from rewardpay.services.ledger.service import LedgerService
from rewardpay.services.recovery.service import RecoveryService
from rewardpay.services.wallets.pool import HotWallet, WalletPool


@dataclass
class Services:
    cfg: Settings
    coordinator: Coordinator
    dispatcher: Dispatcher
    pool: WalletPool
    engine: ExecutionEngine
    ledger: LedgerService
    board: OutcomeBoard
    recovery: RecoveryService
    trigger: BatchTrigger
    intake: ClaimIntakeService
    router: JobRouter

    def validate(self) -> None:
        """Startup checks: every source has a wallet and locks outlive the work they guard."""

        self.pool.validate(self.cfg.claim_sources)
        worst_case = self.engine.worst_case_seconds()
        too_short = {
            name: ttl
            for name, ttl in (
                ("batch_lock_ttl_seconds", self.cfg.batch_lock_ttl_seconds),
                ("wallet_lease_ttl_seconds", self.cfg.wallet_lease_ttl_seconds),
            )
            if ttl <= worst_case
        }
        if too_short:
            raise ConfigurationError(
                "lock TTL shorter than worst-case execution", {"worst_case_seconds": worst_case, **too_short}
            )


def build_services(
    cfg: Settings,
    coordinator: Coordinator,
    chain: ChainGateway,
    dispatcher: Dispatcher,
    session_factory,
) -> Services:
    pool = WalletPool(
        coordinator,
        [HotWallet.from_config(wallet) for wallet in cfg.wallets],
        cfg.wallet_lease_ttl_seconds,
        (cfg.busy_retry_min_seconds, cfg.busy_retry_max_seconds),
    )
    engine = ExecutionEngine(chain, cfg)
    ledger = LedgerService(session_factory, coordinator, cfg.unit_amount)
    board = OutcomeBoard(coordinator, cfg.claim_status_ttl_seconds)
    recovery = RecoveryService(session_factory, coordinator, pool, engine, ledger, board, dispatcher, cfg)
    trigger = BatchTrigger(coordinator, pool, engine, ledger, recovery, board, dispatcher, cfg)
    intake = ClaimIntakeService(coordinator, ledger, trigger, recovery, board, cfg)
    router = JobRouter(trigger, recovery, engine, pool)
    return Services(
        cfg=cfg,
        coordinator=coordinator,
        dispatcher=dispatcher,
        pool=pool,
        engine=engine,
        ledger=ledger,
        board=board,
        recovery=recovery,
        trigger=trigger,
        intake=intake,
        router=router,
    )
