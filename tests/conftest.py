"""Shared fixtures: in-memory Redis and SQLite, a scripted chain, a recording dispatcher."""

import asyncio
import json
import os
from datetime import datetime, timezone

# Settings are read at import time, so the environment must be ready first.
os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")
os.environ.setdefault("TOKEN_ADDRESS", "0x5FbDB2315678afecb367f032d93F642f64180aa3")
os.environ.setdefault(
    "WALLETS",
    json.dumps(
        [
            {
                "purpose": "web",
                "private_key": "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
                "airdrop_contract": "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512",
            },
            {
                "purpose": "mini_app",
                "private_key": "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
                "airdrop_contract": "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512",
            },
        ]
    ),
)

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from rewardpay.common.config import settings  # noqa: E402
from rewardpay.common.db import Base  # noqa: E402
from rewardpay.common.errors import TransientChainError  # noqa: E402
from rewardpay.common.kv import Coordinator  # noqa: E402
from rewardpay.services.executor.chain import Receipt  # noqa: E402
from rewardpay.services.gateway.wiring import build_services  # noqa: E402
from rewardpay.services.intake.schemas import Claim, ClaimRequest  # noqa: E402
from rewardpay.services.ledger.models import LedgerEntry  # noqa: E402,F401
from rewardpay.services.recovery.models import FailureRecord  # noqa: E402,F401

WEB_WALLET = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
RECIPIENTS = [
    "0x70997970c51812dc3a010c7d01b50e0d17dc79c8",
    "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc",
    "0x90f79bf6eb2c4f870365e785982e1f101e93b906",
    "0x15d34aaf54267db7d7c367839aaf71a00a2c6a65",
    "0x9965507d1a55bcc2695c58ba16fb37d819b0a4dc",
]


class FakeChain:
    """Scripted chain: each airdrop send consumes the next scripted outcome.

    Outcomes are "ok", "revert", "timeout" (still pending, nonce unused),
    "late" (mined ok but the receipt wait times out), "unseen" (nonce used,
    no receipt visible yet) or an exception raised by the send.
    """

    def __init__(self) -> None:
        self.native = 10**18
        self.tokens = 10**30
        self.network_gas_price: int | None = 1_000_000_000
        self.allowances: dict[tuple[str, str], int] = {}
        self.script: list = []
        self.airdrops: list[dict] = []
        self.approvals: list[dict] = []
        self.nonce_reads = 0
        self.receipt_delay = 0.0
        self._outcomes: dict[str, str] = {}
        self._sent = 0
        self._nonce = 0

    def _hash(self) -> str:
        self._sent += 1
        return f"0x{self._sent:064x}"

    async def native_balance(self, address: str) -> int:
        return self.native

    async def token_balance(self, address: str) -> int:
        return self.tokens

    async def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 10**30)

    async def gas_price(self) -> int | None:
        return self.network_gas_price

    async def nonce(self, address: str) -> int:
        self.nonce_reads += 1
        return self._nonce

    async def send_approve(self, account, spender, amount, nonce, gas_price) -> str:
        tx_hash = self._hash()
        self.allowances[(account.address, spender)] = amount
        self.approvals.append({"spender": spender, "amount": amount, "nonce": nonce, "gas_price": gas_price})
        self._outcomes[tx_hash] = "ok"
        self._nonce += 1
        return tx_hash

    async def send_airdrop(self, account, contract, contents, nonce, gas_price, gas_limit) -> str:
        outcome = self.script.pop(0) if self.script else "ok"
        if isinstance(outcome, BaseException):
            raise outcome
        tx_hash = self._hash()
        self.airdrops.append(
            {
                "sender": account.address,
                "contract": contract,
                "contents": list(contents),
                "nonce": nonce,
                "gas_price": gas_price,
                "gas_limit": gas_limit,
                "tx_hash": tx_hash,
            }
        )
        self._outcomes[tx_hash] = outcome
        if outcome != "timeout":
            self._nonce += 1
        return tx_hash

    def confirm(self, tx_hash: str) -> None:
        self._outcomes[tx_hash] = "ok"

    def _receipt(self, tx_hash: str) -> Receipt:
        status = 0 if self._outcomes.get(tx_hash) == "revert" else 1
        return Receipt(tx_hash=tx_hash, status=status, block_number=100 + int(tx_hash, 16))

    async def wait_for_receipt(self, tx_hash: str, timeout_seconds: float) -> Receipt:
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        if self._outcomes.get(tx_hash, "ok") in ("timeout", "late", "unseen"):
            raise TransientChainError(f"no receipt for {tx_hash}")
        return self._receipt(tx_hash)

    async def transaction_receipt(self, tx_hash: str) -> Receipt | None:
        if self._outcomes.get(tx_hash) in (None, "timeout", "unseen"):
            return None
        return self._receipt(tx_hash)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.published: list[tuple] = []
        self.fail = False

    async def publish(self, job, delay_seconds: int = 0) -> str | None:
        if self.fail:
            raise httpx.HTTPError("dispatch unavailable")
        self.published.append((job, delay_seconds))
        return f"msg-{len(self.published)}"

    def jobs(self, kind: str) -> list[tuple]:
        return [(job, delay) for job, delay in self.published if job.kind == kind]

    async def close(self) -> None:
        return None


@pytest.fixture
def cfg():
    return settings.model_copy(
        update={
            "batch_size": 3,
            "batch_timeout_seconds": 1,
            "waiter_timeout_seconds": 2,
            "waiter_poll_seconds": 0.05,
            "tx_retry_delay_seconds": 0,
            "tx_receipt_timeout_seconds": 1,
        }
    )


@pytest.fixture
def coordinator():
    return Coordinator(fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True))


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def services(cfg, coordinator, chain, dispatcher, session_factory):
    return build_services(cfg, coordinator, chain, dispatcher, session_factory)


def claim_request(user_key: str, event_id: str = "event-1", source: str = "web", address: str | None = None):
    return ClaimRequest(
        user_key=user_key,
        recipient_address=address or RECIPIENTS[hash(user_key) % len(RECIPIENTS)],
        event_id=event_id,
        source=source,
    )


def make_claim(
    user_key: str,
    event_id: str = "event-1",
    source: str = "web",
    address: str | None = None,
    enqueued_at: datetime | None = None,
) -> Claim:
    """A queued claim built without going through intake."""

    recipient = address or RECIPIENTS[0]
    enqueued_at = enqueued_at or datetime.now(timezone.utc)
    return Claim(
        claim_id=f"{recipient}:{event_id}:{user_key}:{enqueued_at.timestamp()}",
        user_key=user_key,
        recipient_address=recipient,
        event_id=event_id,
        source=source,
        enqueued_at=enqueued_at,
    )
