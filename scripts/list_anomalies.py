"""Fetch and print unresolved reconciliation anomalies awaiting backfill."""

import argparse
import json

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="List unresolved reconciliation anomalies.")
    parser.add_argument("--reconciler-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.reconciler_url}/internal/anomalies",
        params={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
