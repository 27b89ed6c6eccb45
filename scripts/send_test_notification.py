"""Push one Play developer notification to the reconciler webhook.

Builds the same Pub/Sub push envelope Google sends, so it is useful for
manual duplicate-delivery and out-of-order testing against a local stack.
"""

import argparse
import base64
import json
import time
from uuid import uuid4

import httpx


NOTIFICATION_TYPES = {
    "RECOVERED": 1,
    "RENEWED": 2,
    "CANCELLED": 3,
    "PURCHASED": 4,
    "ON_HOLD": 5,
    "IN_GRACE_PERIOD": 6,
    "RESTARTED": 7,
    "PRICE_CHANGE_CONFIRMED": 8,
    "DEFERRED": 9,
    "PAUSED": 10,
    "PAUSE_SCHEDULE_CHANGED": 11,
    "REVOKED": 12,
    "EXPIRED": 13,
}


def build_envelope(
    kind: str | None,
    purchase_token: str,
    product_id: str,
    package_name: str,
    message_id: str | None,
    subscription: str,
) -> dict:
    """Return a push body; `kind=None` sends a test notification."""

    notification: dict = {
        "version": "1.0",
        "packageName": package_name,
        "eventTimeMillis": str(int(time.time() * 1000)),
    }
    if kind is None:
        notification["testNotification"] = {"version": "1.0"}
    else:
        notification["subscriptionNotification"] = {
            "version": "1.0",
            "notificationType": NOTIFICATION_TYPES[kind],
            "purchaseToken": purchase_token,
            "subscriptionId": product_id,
        }
    message = {
        "data": base64.b64encode(json.dumps(notification).encode("utf-8")).decode("ascii"),
        "publishTime": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    if message_id:
        message["messageId"] = message_id
    return {"message": message, "subscription": subscription}


def main() -> None:
    """Parse CLI args and deliver one notification (optionally several times)."""

    parser = argparse.ArgumentParser(description="Send a Play RTDN push to the reconciler.")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/google-play")
    parser.add_argument("--token", required=True, help="Pub/Sub verification token")
    parser.add_argument("--kind", choices=sorted(NOTIFICATION_TYPES), default=None)
    parser.add_argument("--test", action="store_true", help="Send a test notification instead")
    parser.add_argument("--purchase-token", default="token-1")
    parser.add_argument("--product-id", default="premium_monthly")
    parser.add_argument("--package-name", default="com.example.app")
    parser.add_argument("--message-id", default=None, help="Defaults to a random id; pass '' to omit")
    parser.add_argument("--subscription", default="projects/local/subscriptions/play-rtdn-push")
    parser.add_argument("--repeat", type=int, default=1, help="Redeliver the same envelope N times")
    args = parser.parse_args()

    if args.test == bool(args.kind):
        raise SystemExit("Provide exactly one of --kind or --test")

    message_id = str(uuid4()) if args.message_id is None else args.message_id
    envelope = build_envelope(
        None if args.test else args.kind,
        args.purchase_token,
        args.product_id,
        args.package_name,
        message_id,
        args.subscription,
    )
    for attempt in range(1, args.repeat + 1):
        resp = httpx.post(args.url, params={"token": args.token}, json=envelope, timeout=10.0)
        print(f"attempt={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
