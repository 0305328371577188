"""Async load generator for the claim endpoint.

Each request uses a fresh user key unless `--duplicate-every` is set, in which
case every Nth request repeats an earlier pair to exercise idempotency.
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter
from uuid import uuid4

import httpx
from eth_account import Account


async def send_one(client: httpx.AsyncClient, base_url: str, api_key: str, payload: dict):
    """Send one claim and return (status_code, payout status, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(
            f"{base_url}/claims",
            json=payload,
            headers={"x-api-key": api_key, "x-correlation-id": str(uuid4())},
        )
        latency = (time.perf_counter() - started) * 1000
        status = resp.json().get("status") if resp.status_code < 400 else None
        return resp.status_code, status, latency
    except httpx.HTTPError:
        latency = (time.perf_counter() - started) * 1000
        return 599, None, latency


async def run(total: int, concurrency: int, base_url: str, api_key: str, source: str, event_id: str, dup: int):
    """Execute a bounded-concurrency claim run and print summary stats."""

    sem = asyncio.Semaphore(concurrency)
    payloads = []
    for i in range(total):
        user_key = f"user-{i - 1}" if dup and i and i % dup == 0 else f"user-{i}"
        payloads.append(
            {
                "user_key": user_key,
                "recipient_address": Account.create().address,
                "event_id": event_id,
                "source": source,
            }
        )

    async with httpx.AsyncClient(timeout=120.0) as client:

        async def worker(payload: dict):
            async with sem:
                return await send_one(client, base_url, api_key, payload)

        results = await asyncio.gather(*(worker(payload) for payload in payloads))

    codes = Counter(code for code, _, _ in results)
    statuses = Counter(status for _, status, _ in results if status)
    lats = sorted(latency for _, _, latency in results)

    def pct(values, p):
        if not values:
            return 0.0
        idx = min(len(values) - 1, max(0, int((p / 100.0) * len(values)) - 1))
        return values[idx]

    print(f"total={total}")
    print(f"http_codes={dict(codes)}")
    print(f"payout_statuses={dict(statuses)}")
    print(f"p50_ms={pct(lats, 50):.2f}")
    print(f"p95_ms={pct(lats, 95):.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=25)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--source", default="web")
    parser.add_argument("--event-id", default=f"load-{int(time.time())}")
    parser.add_argument("--duplicate-every", type=int, default=0)
    args = parser.parse_args()
    asyncio.run(
        run(
            args.total,
            args.concurrency,
            args.base_url,
            args.api_key,
            args.source,
            args.event_id,
            args.duplicate_every,
        )
    )
