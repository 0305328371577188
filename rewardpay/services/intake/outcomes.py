"""Claim outcome board.

Outcomes are written to the shared store first; the in-process future map is
only a latency shortcut for callers waiting in the same instance that ran the
batch. A waiter in any other instance finds the outcome by polling the store.
"""

import asyncio

from rewardpay.common.kv import Coordinator, Keys
from rewardpay.common.metrics import claim_outcomes_total
from rewardpay.services.intake.schemas import PayoutResult


class OutcomeBoard:
    def __init__(self, coordinator: Coordinator, status_ttl_seconds: int) -> None:
        self.coordinator = coordinator
        self.status_ttl_seconds = status_ttl_seconds
        self._waiters: dict[str, asyncio.Future] = {}

    def register(self, claim_id: str) -> asyncio.Future:
        future = self._waiters.get(claim_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._waiters[claim_id] = future
        return future

    def discard(self, claim_id: str) -> None:
        self._waiters.pop(claim_id, None)

    async def publish(self, result: PayoutResult) -> None:
        """Persist the outcome, then wake a local waiter if there is one."""

        claim_outcomes_total.labels(status=result.status).inc()
        try:
            await self.coordinator.set_json(
                Keys.claim_status(result.claim_id),
                result.model_dump(mode="json"),
                ttl_seconds=self.status_ttl_seconds,
            )
        finally:
            future = self._waiters.pop(result.claim_id, None)
            if future is not None and not future.done():
                future.set_result(result)

    async def lookup(self, claim_id: str) -> PayoutResult | None:
        raw = await self.coordinator.get_json(Keys.claim_status(claim_id))
        return PayoutResult.model_validate(raw) if raw else None

    async def wait(
        self, claim_id: str, future: asyncio.Future, timeout_seconds: float, poll_seconds: float
    ) -> PayoutResult | None:
        """Wait for an outcome on a future from `register`; None on timeout.

        Cancelling or timing out here never touches the batch doing the work.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                try:
                    result = await asyncio.wait_for(asyncio.shield(future), timeout=min(poll_seconds, remaining))
                except asyncio.TimeoutError:
                    result = await self.lookup(claim_id)
                if result is not None:
                    return result
        finally:
            self.discard(claim_id)
