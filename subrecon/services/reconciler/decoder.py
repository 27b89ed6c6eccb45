"""Decoding of Google Play Real-time Developer Notifications.

Push `message.data` is base64-encoded JSON. Production Google payloads are
camelCase; the local Play emulator publishes the same structure in
snake_case, so both spellings are accepted.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from subrecon.services.reconciler.schemas import RenewalEvent, RenewalEventKind


class DecodeError(ValueError):
    """Payload cannot be turned into a notification; redelivery will not help."""


class GooglePlayTranslator:
    """Maps numeric RTDN subscription notification types to symbolic kinds."""

    provider = "google_play"

    CODES: dict[int, RenewalEventKind] = {
        1: RenewalEventKind.RECOVERED,
        2: RenewalEventKind.RENEWED,
        3: RenewalEventKind.CANCELLED,
        4: RenewalEventKind.PURCHASED,
        5: RenewalEventKind.ON_HOLD,
        6: RenewalEventKind.IN_GRACE_PERIOD,
        7: RenewalEventKind.RESTARTED,
        8: RenewalEventKind.PRICE_CHANGE_CONFIRMED,
        9: RenewalEventKind.DEFERRED,
        10: RenewalEventKind.PAUSED,
        11: RenewalEventKind.PAUSE_SCHEDULE_CHANGED,
        12: RenewalEventKind.REVOKED,
        13: RenewalEventKind.EXPIRED,
    }

    def translate(self, code: int) -> RenewalEventKind:
        return self.CODES.get(code, RenewalEventKind.UNKNOWN)


@dataclass(frozen=True)
class DecodedNotification:
    """Result of decoding one push; at most one of the variants is set."""

    raw: dict[str, Any]
    event: RenewalEvent | None = None
    is_test: bool = False
    is_subscription: bool = True


def _pick(obj: dict[str, Any], camel: str, snake: str) -> Any:
    return obj[camel] if camel in obj else obj.get(snake)


def _b64decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    try:
        if "-" in data or "_" in data:
            return base64.urlsafe_b64decode(padded)
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"message data is not valid base64: {exc}") from exc


def _millis_to_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        raise DecodeError(f"invalid eventTimeMillis: {value!r}") from exc


def decode_push_data(
    data: str | None,
    message_id: str | None = None,
    translator: GooglePlayTranslator | None = None,
) -> DecodedNotification:
    """Turn one push `message.data` blob into a `DecodedNotification`.

    Raises `DecodeError` for anything that is not a well-formed notification.
    """

    if not data:
        raise DecodeError("missing message data")
    translator = translator or GooglePlayTranslator()

    try:
        raw = json.loads(_b64decode(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"message data is not JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise DecodeError("notification must be a JSON object")

    if _pick(raw, "testNotification", "test_notification") is not None:
        return DecodedNotification(raw=raw, is_test=True)

    sub = _pick(raw, "subscriptionNotification", "subscription_notification")
    if sub is None:
        # One-time product and voided purchase notifications are not ours to reconcile.
        return DecodedNotification(raw=raw, is_subscription=False)
    if not isinstance(sub, dict):
        raise DecodeError("subscriptionNotification must be an object")

    code = _pick(sub, "notificationType", "notification_type")
    try:
        code = int(code)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"invalid notificationType: {code!r}") from exc

    try:
        event = RenewalEvent(
            event_id=message_id or None,
            kind=translator.translate(code),
            purchase_token=_pick(sub, "purchaseToken", "purchase_token"),
            product_id=_pick(sub, "subscriptionId", "subscription_id"),
            provider_code=code,
            package_name=_pick(raw, "packageName", "package_name"),
            event_time=_millis_to_datetime(_pick(raw, "eventTimeMillis", "event_time_millis")),
        )
    except ValidationError as exc:
        raise DecodeError(f"subscription notification is incomplete: {exc.error_count()} error(s)") from exc
    return DecodedNotification(raw=raw, event=event)
