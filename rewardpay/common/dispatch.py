"""Durable delayed dispatch.

There is no long-running timer process: anything that must happen later is
published to QStash, which calls `/internal/jobs` back after the delay.
"""

from typing import Protocol

import httpx

from rewardpay.common.jobs import Job
from rewardpay.common.logging import logger
from rewardpay.common.metrics import jobs_dispatched_total


class Dispatcher(Protocol):
    async def publish(self, job: Job, delay_seconds: int = 0) -> str | None:
        """Schedule `job` for delivery after `delay_seconds`; returns a message id."""


class QStashDispatcher:
    """Publishes jobs through the QStash HTTP API."""

    def __init__(
        self,
        qstash_url: str,
        token: str,
        callback_url: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.qstash_url = qstash_url.rstrip("/")
        self.token = token
        self.callback_url = callback_url
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=5.0)

    async def publish(self, job: Job, delay_seconds: int = 0) -> str | None:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            # QStash strips the prefix and forwards the header to the callback.
            "Upstash-Forward-X-Api-Key": self.api_key,
        }
        if delay_seconds > 0:
            headers["Upstash-Delay"] = f"{int(delay_seconds)}s"
        try:
            resp = await self.client.post(
                f"{self.qstash_url}/v2/publish/{self.callback_url}",
                headers=headers,
                content=job.model_dump_json(),
            )
            resp.raise_for_status()
        except httpx.HTTPError:
            jobs_dispatched_total.labels(kind=job.kind, result="error").inc()
            raise
        jobs_dispatched_total.labels(kind=job.kind, result="ok").inc()
        message_id = resp.json().get("messageId")
        logger.info("job_published kind=%s delay_s=%s message_id=%s", job.kind, delay_seconds, message_id)
        return message_id

    async def close(self) -> None:
        await self.client.aclose()
