"""Trigger an out-of-band sweep of unprocessed notifications."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for the sweep endpoint."""

    parser = argparse.ArgumentParser(description="Retry notifications left unprocessed by failed deliveries.")
    parser.add_argument("--reconciler-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.reconciler_url}/internal/sweep",
        params={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=60.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
