"""Re-apply deferred ledger writes and print the repair summary JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for ledger gap repair."""

    parser = argparse.ArgumentParser(description="Drain the ledger gap list through the gateway.")
    parser.add_argument("--gateway-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.gateway_url}/internal/ledger/repair",
        params={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=30.0,
    )
    resp.raise_for_status()
    summary = resp.json()
    print(json.dumps(summary, indent=2))
    if summary.get("remaining"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
