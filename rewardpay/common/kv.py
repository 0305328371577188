"""Shared key-value coordinator.

Thin layer over Redis giving the payout engine its only cross-invocation
state: FIFO claim queues, TTL'd locks and small JSON status values. Every lock
is taken with one `SET NX PX`; expiry is the only deadlock breaker, so callers
must size TTLs above the worst-case duration of the work they guard.
"""

import json
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import WatchError


class Keys:
    """Key naming for everything the coordinator stores."""

    @staticmethod
    def queue(source: str) -> str:
        return f"batch:claims:{source}"

    @staticmethod
    def timer(source: str) -> str:
        return f"batch:timer:{source}"

    @staticmethod
    def batch_lock(source: str) -> str:
        return f"batch:lock:{source}"

    @staticmethod
    def wallet_lock(address: str) -> str:
        return f"wallet-lock:{address.lower()}"

    @staticmethod
    def claim_status(claim_id: str) -> str:
        return f"claim:status:{claim_id}"

    @staticmethod
    def inflight(user_key: str, event_id: str) -> str:
        return f"claim:inflight:{user_key}:{event_id}"

    INFLIGHT_PATTERN = "claim:inflight:*"
    LEDGER_GAPS = "ledger:gaps"


class Coordinator:
    """Async wrapper for list, lock and JSON-value primitives."""

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "Coordinator":
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    # Lists

    async def push(self, key: str, value: dict[str, Any]) -> int:
        """Append one JSON item to the tail; returns the new length."""

        return int(await self.client.rpush(key, json.dumps(value)))

    async def push_front(self, key: str, values: list[dict[str, Any]]) -> int:
        """Put items back at the head, keeping their original order."""

        if not values:
            return await self.length(key)
        encoded = [json.dumps(value) for value in reversed(values)]
        return int(await self.client.lpush(key, *encoded))

    async def length(self, key: str) -> int:
        return int(await self.client.llen(key))

    async def range(self, key: str, start: int = 0, stop: int = -1) -> list[dict[str, Any]]:
        return [json.loads(raw) for raw in await self.client.lrange(key, start, stop)]

    async def pop_front(self, key: str, count: int) -> list[dict[str, Any]]:
        """Read and remove up to `count` head items in one MULTI transaction."""

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrange(key, 0, count - 1)
            pipe.ltrim(key, count, -1)
            raw_items, _ = await pipe.execute()
        return [json.loads(raw) for raw in raw_items]

    async def trim(self, key: str, start: int, stop: int = -1) -> None:
        await self.client.ltrim(key, start, stop)

    # Locks

    async def acquire(self, key: str, ttl_seconds: float, token: str | None = None) -> str | None:
        """Set-if-absent with TTL. Returns the owner token, or None if held."""

        token = token or uuid4().hex
        acquired = await self.client.set(key, token, nx=True, px=max(1, int(ttl_seconds * 1000)))
        return token if acquired else None

    async def release(self, key: str, token: str) -> bool:
        """Delete the lock only if `token` still owns it."""

        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != token:
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ttl_remaining(self, key: str) -> float | None:
        """Seconds until `key` expires; None when absent or persistent."""

        millis = await self.client.pttl(key)
        return millis / 1000 if millis is not None and millis >= 0 else None

    # JSON values

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None:
        await self.client.set(key, json.dumps(value), ex=ttl_seconds)

    async def get_json(self, key: str) -> dict[str, Any] | None:
        raw = await self.client.get(key)
        return json.loads(raw) if raw is not None else None

    async def count_keys(self, pattern: str) -> int:
        count = 0
        async for _ in self.client.scan_iter(match=pattern, count=500):
            count += 1
        return count
