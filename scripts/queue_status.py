"""Print batch queue depth, timers, locks and wallet leases per claim source."""

import argparse
import json

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="Show queue and wallet state through the gateway.")
    parser.add_argument("--gateway-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--max-depth", type=int, default=0, help="exit 1 when any queue is deeper than this")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    with httpx.Client(base_url=args.gateway_url, headers=headers, timeout=10.0) as client:
        resp = client.get("/internal/queues")
        resp.raise_for_status()
        report = resp.json()
        for source in report["sources"]:
            wallets = client.get(f"/internal/wallets/{source}")
            report["sources"][source]["wallets"] = wallets.json()["wallets"] if wallets.status_code == 200 else []

    print(json.dumps(report, indent=2))
    too_deep = [name for name, state in report["sources"].items() if args.max_depth and state["depth"] > args.max_depth]
    if too_deep or not report["store_ok"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
