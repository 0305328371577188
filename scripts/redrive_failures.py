"""Re-drive failed or exhausted claim failure records.

Lists matching records first; with `--apply` puts them back on the retry path.
A record whose user/event pair already has a claim in flight is skipped by the
gateway.
"""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for manual failure re-drive."""

    parser = argparse.ArgumentParser(description="Re-drive failed claim payouts.")
    parser.add_argument("--gateway-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--status", action="append", choices=["failed", "max_retries_exceeded"], default=None)
    parser.add_argument("--id", action="append", dest="ids", default=None, help="failure record id")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--apply", action="store_true", help="actually re-drive; default is a dry run")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    statuses = args.status or ["failed", "max_retries_exceeded"]
    with httpx.Client(base_url=args.gateway_url, headers=headers, timeout=30.0) as client:
        matched = []
        for status in statuses:
            resp = client.get("/internal/failures", params={"status": status, "limit": args.limit})
            resp.raise_for_status()
            matched.extend(resp.json())
        if args.ids:
            matched = [record for record in matched if record["id"] in set(args.ids)]
        for record in matched:
            print(
                f"{record['id']} status={record['status']} attempt={record['attempt']} "
                f"user={record['user_key']} event={record['event_id']} error={record['last_error']}"
            )
        if not args.apply:
            print(f"Dry run only; {len(matched)} record(s) would be re-driven.")
            return

        if not matched:
            print("Nothing to re-drive.")
            return
        # Only the listed records; the endpoint treats an empty id list as "all".
        ids = [record["id"] for record in matched]
        resp = client.post("/internal/failures/redrive", json={"ids": ids, "statuses": statuses})
        resp.raise_for_status()
        print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
