"""Ledger writer atomicity and payment uniqueness."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from subrecon.services.reconciler.ledger import LedgerWriter, renewal_order_id
from subrecon.services.reconciler.models import OutboxEvent, Payment, ReconciliationAnomaly, Subscription
from subrecon.services.reconciler.schemas import ProviderSubscriptionSnapshot, RenewalEvent, RenewalEventKind

from conftest import INITIAL_ORDER, PRODUCT_ID, PURCHASE_TOKEN, T0, utc


EXPIRY = T0 + timedelta(days=60)
RENEWAL_ORDER = f"{INITIAL_ORDER}..0"


def _event(kind: RenewalEventKind, token: str = PURCHASE_TOKEN) -> RenewalEvent:
    return RenewalEvent(event_id=None, kind=kind, purchase_token=token, product_id=PRODUCT_ID)


def _snapshot(**fields) -> ProviderSubscriptionSnapshot:
    fields.setdefault("expiry", EXPIRY)
    fields.setdefault("auto_renewing", True)
    fields.setdefault("order_id", RENEWAL_ORDER)
    return ProviderSubscriptionSnapshot(purchase_token=PURCHASE_TOKEN, product_id=PRODUCT_ID, **fields)


def _payments(session_factory) -> list[Payment]:
    with session_factory() as db:
        return db.query(Payment).order_by(Payment.created_at).all()


def test_renewal_records_payment_and_extends_access(session_factory, seeded):
    writer = LedgerWriter(session_factory, audit_topic="test.audit")

    result = writer.apply(_event(RenewalEventKind.RENEWED), _snapshot(), None, now=T0)

    assert result.renewal_recorded
    with session_factory() as db:
        subscription = db.get(Subscription, seeded)
        assert utc(subscription.end_date) == EXPIRY
        assert utc(subscription.next_billing_date) == EXPIRY
        renewal = db.get(Payment, result.payment_id)
        assert renewal.payment_type == "RECURRING"
        assert renewal.provider_order_id == RENEWAL_ORDER
        assert renewal.amount_cents == 9900
        assert renewal.subscription_id == seeded
        outbox = db.query(OutboxEvent).one()
        assert outbox.event_type == "subscription.renewed"
        assert outbox.topic == "test.audit"
        payload = outbox.payload["payload"]
        assert payload["changed"] is True
        assert payload["provider_active"] is True
        assert payload["trial"] is False
        assert db.get(Payment, "pay-initial").payment_type == "INITIAL_SUBSCRIPTION"


def test_crash_before_payment_insert_rolls_back_patch(session_factory, seeded, monkeypatch):
    writer = LedgerWriter(session_factory)

    def crash(*args, **kwargs):
        raise RuntimeError("simulated crash")

    monkeypatch.setattr(writer, "_insert_renewal", crash)

    with pytest.raises(RuntimeError):
        writer.apply(_event(RenewalEventKind.RENEWED), _snapshot(), None, now=T0)

    with session_factory() as db:
        subscription = db.get(Subscription, seeded)
        assert utc(subscription.end_date) == T0 + timedelta(days=30)
        assert db.query(OutboxEvent).count() == 0
    assert len(_payments(session_factory)) == 1


def test_revocation_refunds_and_cancels_together(session_factory, seeded):
    writer = LedgerWriter(session_factory)

    writer.apply(_event(RenewalEventKind.REVOKED), _snapshot(order_id=INITIAL_ORDER), None, now=T0)

    with session_factory() as db:
        payment = db.get(Payment, "pay-initial")
        subscription = db.get(Subscription, seeded)
        assert payment.status == "REFUNDED"
        assert utc(payment.refunded_at) == T0
        assert subscription.status == "CANCELLED"
        assert subscription.recurring_status == "CANCELLED"
        assert subscription.auto_renew is False


def test_revocation_failure_leaves_neither_applied(session_factory, seeded, monkeypatch):
    writer = LedgerWriter(session_factory)

    def crash(*args, **kwargs):
        raise RuntimeError("simulated crash")

    monkeypatch.setattr(writer, "_enqueue_audit", crash)

    with pytest.raises(RuntimeError):
        writer.apply(_event(RenewalEventKind.REVOKED), _snapshot(order_id=INITIAL_ORDER), None, now=T0)

    with session_factory() as db:
        assert db.get(Payment, "pay-initial").status == "PAID"
        assert db.get(Subscription, seeded).status == "ACTIVE"


def test_unlinked_token_records_anomaly(session_factory, seeded):
    writer = LedgerWriter(session_factory)

    result = writer.apply(_event(RenewalEventKind.RENEWED, token="token-unknown"), _snapshot(), "n-x", now=T0)

    assert result.transition.anomaly is not None
    assert result.subscription_id is None
    with session_factory() as db:
        anomaly = db.query(ReconciliationAnomaly).one()
        assert anomaly.purchase_token == "token-unknown"
        assert anomaly.notification_id == "n-x"
        assert anomaly.event_type == "GOOGLE_RENEWED"
        assert anomaly.resolved is False


def test_same_renewal_is_never_recorded_twice(session_factory, seeded):
    """Legacy pushes without an id rely on the payment uniqueness constraint."""

    writer = LedgerWriter(session_factory)

    first = writer.apply(_event(RenewalEventKind.RENEWED), _snapshot(), None, now=T0)
    second = writer.apply(_event(RenewalEventKind.RENEWED), _snapshot(), None, now=T0)

    assert first.renewal_recorded
    assert not second.renewal_recorded
    assert second.transition.note == "renewal already recorded"
    assert len(_payments(session_factory)) == 2


def test_payment_uniqueness_constraint(session_factory, seeded):
    with session_factory() as db:
        db.add(
            Payment(
                user_id="user-1",
                plan_id="plan-monthly",
                store_transaction_id=PURCHASE_TOKEN,
                provider_order_id=INITIAL_ORDER,
                amount_cents=9900,
                currency="KRW",
                payment_type="RECURRING",
            )
        )
        with pytest.raises(IntegrityError):
            db.commit()


def test_off_graph_transition_is_still_applied(session_factory, seeded):
    """Provider truth wins over the expected recurring-status graph."""

    writer = LedgerWriter(session_factory)
    writer.apply(_event(RenewalEventKind.PAUSED), _snapshot(), None, now=T0)

    writer.apply(_event(RenewalEventKind.ON_HOLD), _snapshot(), None, now=T0)

    with session_factory() as db:
        assert db.get(Subscription, seeded).recurring_status == "PENDING_PAYMENT"


def test_renewal_order_id_falls_back_to_period_end():
    snapshot = _snapshot(order_id=None)

    assert renewal_order_id(snapshot) == f"RENEWAL-{int(EXPIRY.timestamp() * 1000)}"
    assert renewal_order_id(_snapshot(order_id=None, expiry=None)) is None
