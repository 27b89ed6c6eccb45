"""Subscription lifecycle transitions.

`transition` is a pure function: it reads the locked local rows and the
freshly fetched provider snapshot and describes what should change. The
ledger writer is the only code that applies the result.

Every field that tracks provider time (`end_date`, `next_billing_date`,
`grace_period_end`) is copied from the snapshot rather than accumulated, so a
late or reordered notification converges on the provider's current truth.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from subrecon.services.reconciler.models import Payment, Subscription
from subrecon.services.reconciler.schemas import (
    ProviderSubscriptionSnapshot,
    RenewalEvent,
    RenewalEventKind,
)


class LedgerEffect(str, Enum):
    NONE = "NONE"
    RECORD_RENEWAL = "RECORD_RENEWAL"
    REFUND = "REFUND"


@dataclass(frozen=True)
class Transition:
    """Subscription patch plus the ledger side effect it implies."""

    patch: dict[str, Any] = field(default_factory=dict)
    ledger: LedgerEffect = LedgerEffect.NONE
    payment_patch: dict[str, Any] = field(default_factory=dict)
    anomaly: str | None = None
    note: str = ""

    @property
    def changes_state(self) -> bool:
        return bool(self.patch or self.payment_patch or self.ledger is not LedgerEffect.NONE)


NO_SUBSCRIPTION = "no subscription linked to purchase token"

# Kinds whose effect is built from the snapshot expiry.
NEEDS_EXPIRY = {
    RenewalEventKind.RENEWED,
    RenewalEventKind.IN_GRACE_PERIOD,
    RenewalEventKind.RESTARTED,
    RenewalEventKind.DEFERRED,
}


def _expiry(snapshot: ProviderSubscriptionSnapshot) -> datetime | None:
    return None if snapshot.gone else snapshot.expiry


def transition(
    current: Subscription | None,
    event: RenewalEvent,
    snapshot: ProviderSubscriptionSnapshot,
    existing_payment: Payment | None,
    now: datetime,
) -> Transition:
    """Compute the next subscription state for one notification.

    `existing_payment` is the ledger row relevant to the event kind: for
    `RENEWED` the payment already recorded for `(purchase_token,
    snapshot.order_id)`, for `REVOKED` the payment being refunded.
    """

    kind = event.kind

    if kind is RenewalEventKind.UNKNOWN:
        return Transition(anomaly=f"unhandled notification type {event.provider_code}")

    if kind is RenewalEventKind.PURCHASED:
        if current is None:
            return Transition(note="new purchase awaits initial validation")
        return Transition(note="purchase already linked")

    if kind is RenewalEventKind.REVOKED:
        return _revoke(current, existing_payment, now)

    if current is None:
        return Transition(anomaly=NO_SUBSCRIPTION)

    expiry = _expiry(snapshot)
    if kind in NEEDS_EXPIRY and expiry is None:
        return Transition(anomaly=f"provider snapshot has no expiry for {kind.value}")

    if kind is RenewalEventKind.RENEWED:
        if existing_payment is not None:
            # Redelivered or stale renewal for an order already in the ledger.
            return Transition(note="renewal already recorded")
        return Transition(
            patch={
                "status": "ACTIVE",
                "recurring_status": "ACTIVE",
                "end_date": expiry,
                "next_billing_date": expiry,
                "failed_attempts": 0,
                "auto_renew": snapshot.auto_renewing,
                "last_billing_date": now,
            },
            ledger=LedgerEffect.RECORD_RENEWAL,
        )

    if kind is RenewalEventKind.RECOVERED:
        patch = {
            "status": "ACTIVE",
            "recurring_status": "ACTIVE",
            "failed_attempts": 0,
            "grace_period_end": None,
        }
        if expiry is not None:
            patch["end_date"] = expiry
            patch["auto_renew"] = snapshot.auto_renewing
        return Transition(patch=patch)

    if kind is RenewalEventKind.CANCELLED:
        # Access is untouched; it ends with end_date or a later EXPIRED.
        return Transition(
            patch={"auto_renew": False, "recurring_status": "CANCELLED", "next_billing_date": None}
        )

    if kind is RenewalEventKind.ON_HOLD:
        return Transition(
            patch={
                "status": "ACTIVE",
                "recurring_status": "PENDING_PAYMENT",
                "failed_attempts": (current.failed_attempts or 0) + 1,
                "last_failure_reason": "Payment on hold",
                "last_failure_date": now,
            }
        )

    if kind is RenewalEventKind.IN_GRACE_PERIOD:
        return Transition(
            patch={"status": "ACTIVE", "recurring_status": "PENDING_PAYMENT", "grace_period_end": expiry}
        )

    if kind is RenewalEventKind.RESTARTED:
        return Transition(
            patch={
                "status": "ACTIVE",
                "recurring_status": "ACTIVE",
                "end_date": expiry,
                "next_billing_date": expiry,
                "failed_attempts": 0,
                "grace_period_end": None,
                "auto_renew": snapshot.auto_renewing,
            }
        )

    if kind is RenewalEventKind.PAUSED:
        return Transition(patch={"recurring_status": "PAUSED", "auto_renew": False})

    if kind is RenewalEventKind.PRICE_CHANGE_CONFIRMED:
        return Transition(note="price change applies at next renewal")

    if kind is RenewalEventKind.DEFERRED:
        return Transition(patch={"end_date": expiry, "next_billing_date": expiry})

    if kind is RenewalEventKind.PAUSE_SCHEDULE_CHANGED:
        return Transition(note="pause schedule changed")

    if kind is RenewalEventKind.EXPIRED:
        return Transition(
            patch={
                "status": "EXPIRED",
                "recurring_status": "INACTIVE",
                "auto_renew": False,
                "next_billing_date": None,
            }
        )

    return Transition(anomaly=f"unhandled notification kind {kind.value}")


def _revoke(current: Subscription | None, payment: Payment | None, now: datetime) -> Transition:
    if payment is None:
        return Transition(anomaly="no payment recorded for purchase token")

    payment_patch: dict[str, Any] = {}
    if payment.status != "REFUNDED":
        payment_patch = {"status": "REFUNDED", "refunded_at": now}

    patch: dict[str, Any] = {}
    if current is not None:
        patch = {
            "status": "CANCELLED",
            "recurring_status": "CANCELLED",
            "auto_renew": False,
            "next_billing_date": None,
        }
        if current.cancelled_at is None:
            patch["cancelled_at"] = now
            patch["cancel_reason"] = "Revoked"
    return Transition(patch=patch, ledger=LedgerEffect.REFUND, payment_patch=payment_patch)
