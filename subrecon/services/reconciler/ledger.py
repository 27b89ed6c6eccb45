"""Transactional application of subscription transitions.

Everything a notification changes (subscription patch, renewal payment or
refund, anomaly record, receipt flag, audit outbox row) commits in one
transaction or not at all.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from subrecon.common.config import settings
from subrecon.common.events import EventEnvelope
from subrecon.common.logging import logger, trace_id_ctx
from subrecon.common.metrics import (
    offgraph_transitions_total,
    reconciliation_anomalies_total,
    renewal_payments_recorded_total,
)
from subrecon.common.outbox import enqueue_outbox_event
from subrecon.common.state_machine import validate_transition
from subrecon.services.reconciler.idempotency import IdempotencyGuard
from subrecon.services.reconciler.models import (
    OutboxEvent,
    Payment,
    Plan,
    ReconciliationAnomaly,
    Subscription,
)
from subrecon.services.reconciler.schemas import (
    ProviderSubscriptionSnapshot,
    RenewalEvent,
    RenewalEventKind,
)
from subrecon.services.reconciler.state_machine import LedgerEffect, Transition, transition


def renewal_order_id(snapshot: ProviderSubscriptionSnapshot) -> str | None:
    """Ledger key for the billing period the snapshot describes.

    Without a provider order id the period end is used, so redeliveries of
    the same renewal still collide on the payment uniqueness constraint.
    """

    if snapshot.order_id:
        return snapshot.order_id
    if snapshot.expiry is not None:
        return f"RENEWAL-{int(snapshot.expiry.timestamp() * 1000)}"
    return None


@dataclass
class LedgerResult:
    """What one committed reconciliation did."""

    transition: Transition
    subscription_id: str | None = None
    status: str | None = None
    recurring_status: str | None = None
    payment_id: str | None = None
    renewal_recorded: bool = False


class LedgerWriter:
    """Applies `transition` results against the data store atomically."""

    def __init__(self, session_factory, service_name: str = "reconciler", audit_topic: str | None = None) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.audit_topic = audit_topic or settings.audit_topic

    def _locked_subscription(self, db, purchase_token: str) -> Subscription | None:
        """Row-lock the subscription funded by this purchase token."""

        subscription_id = db.execute(
            select(Payment.subscription_id)
            .where(Payment.store_transaction_id == purchase_token, Payment.subscription_id.is_not(None))
            .order_by(Payment.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if subscription_id is None:
            return None
        return db.get(Subscription, subscription_id, with_for_update=True)

    def _payment_by_order(self, db, purchase_token: str, order_id: str | None) -> Payment | None:
        if order_id is None:
            return None
        return db.execute(
            select(Payment).where(
                Payment.store_transaction_id == purchase_token,
                Payment.provider_order_id == order_id,
            )
        ).scalar_one_or_none()

    def _latest_payment(self, db, purchase_token: str) -> Payment | None:
        return db.execute(
            select(Payment)
            .where(Payment.store_transaction_id == purchase_token)
            .order_by(Payment.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _relevant_payment(self, db, event: RenewalEvent, snapshot: ProviderSubscriptionSnapshot) -> Payment | None:
        if event.kind is RenewalEventKind.RENEWED:
            return self._payment_by_order(db, event.purchase_token, renewal_order_id(snapshot))
        if event.kind is RenewalEventKind.REVOKED:
            return self._payment_by_order(db, event.purchase_token, snapshot.order_id) or self._latest_payment(
                db, event.purchase_token
            )
        return None

    def _apply_patch(self, subscription: Subscription, patch: dict[str, Any], kind: RenewalEventKind) -> None:
        new_recurring = patch.get("recurring_status")
        if new_recurring is not None:
            try:
                validate_transition(subscription.recurring_status, new_recurring)
            except ValueError:
                # Provider truth wins; the jump is surfaced, not refused.
                logger.warning(
                    "offgraph_transition subscription_id=%s kind=%s from=%s to=%s",
                    subscription.subscription_id,
                    kind.value,
                    subscription.recurring_status,
                    new_recurring,
                )
                offgraph_transitions_total.labels(
                    service=self.service_name,
                    from_state=subscription.recurring_status,
                    to_state=new_recurring,
                ).inc()
        for name, value in patch.items():
            setattr(subscription, name, value)

    def _plan_for(self, db, product_id: str) -> Plan | None:
        return db.execute(
            select(Plan).where(Plan.product_id == product_id, Plan.is_active.is_(True))
        ).scalar_one_or_none()

    def _insert_renewal(
        self,
        db,
        subscription: Subscription,
        event: RenewalEvent,
        snapshot: ProviderSubscriptionSnapshot,
        now: datetime,
    ) -> Payment | None:
        """Insert the RECURRING payment unless this order is already recorded."""

        order_id = renewal_order_id(snapshot)
        # Re-check under the subscription lock: a concurrent delivery may have won.
        if self._payment_by_order(db, event.purchase_token, order_id) is not None:
            return None

        plan = self._plan_for(db, event.product_id)
        previous = self._latest_payment(db, event.purchase_token)
        if plan is not None:
            amount, currency, plan_id = plan.amount_cents, plan.currency, plan.plan_id
        elif previous is not None:
            amount, currency, plan_id = previous.amount_cents, previous.currency, subscription.plan_id
        else:
            amount, currency, plan_id = 0, settings.default_currency, subscription.plan_id

        payment = Payment(
            user_id=subscription.user_id,
            plan_id=plan_id,
            subscription_id=subscription.subscription_id,
            store_transaction_id=event.purchase_token,
            provider_order_id=order_id,
            status="PAID",
            amount_cents=amount,
            currency=currency,
            payment_type="RECURRING",
            payment_source="GOOGLE",
            approved_at=now,
        )
        try:
            with db.begin_nested():
                db.add(payment)
        except IntegrityError:
            logger.info(
                "renewal_already_recorded purchase_token=%s order_id=%s",
                event.purchase_token,
                order_id,
            )
            return None
        renewal_payments_recorded_total.labels(service=self.service_name).inc()
        return payment

    def _add_anomaly(
        self,
        db,
        notification_id: str | None,
        event: RenewalEvent,
        reason: str,
        snapshot: ProviderSubscriptionSnapshot | None = None,
    ) -> None:
        payload: dict[str, Any] = {"event": event.model_dump(mode="json")}
        if snapshot is not None:
            payload["snapshot"] = snapshot.model_dump(mode="json")
        db.add(
            ReconciliationAnomaly(
                notification_id=notification_id,
                event_type=event.event_type,
                purchase_token=event.purchase_token,
                reason=reason,
                payload=payload,
            )
        )
        reconciliation_anomalies_total.labels(service=self.service_name, kind=event.kind.value).inc()
        logger.warning(
            "reconciliation_anomaly kind=%s purchase_token=%s reason=%s",
            event.kind.value,
            event.purchase_token,
            reason,
        )

    def _enqueue_audit(
        self,
        db,
        notification_id: str | None,
        event: RenewalEvent,
        result: LedgerResult,
        snapshot: ProviderSubscriptionSnapshot,
        now: datetime,
    ) -> None:
        enqueue_outbox_event(
            db,
            OutboxEvent,
            self.audit_topic,
            EventEnvelope(
                event_type=f"subscription.{event.kind.value.lower()}",
                aggregate_id=result.subscription_id or event.purchase_token,
                trace_id=trace_id_ctx.get(),
                payload={
                    "notification_id": notification_id,
                    "purchase_token": event.purchase_token,
                    "product_id": event.product_id,
                    "kind": event.kind.value,
                    "subscription_id": result.subscription_id,
                    "status": result.status,
                    "recurring_status": result.recurring_status,
                    "ledger_effect": result.transition.ledger.value,
                    "payment_id": result.payment_id,
                    "changed": result.transition.changes_state,
                    "anomaly": result.transition.anomaly,
                    "provider_active": snapshot.is_active(now),
                    "trial": snapshot.is_trial,
                },
            ),
        )

    def apply(
        self,
        event: RenewalEvent,
        snapshot: ProviderSubscriptionSnapshot,
        notification_id: str | None,
        now: datetime | None = None,
    ) -> LedgerResult:
        """Lock, decide, and write in one transaction."""

        now = now or datetime.now(timezone.utc)
        with self.session_factory() as db:
            with db.begin():
                subscription = self._locked_subscription(db, event.purchase_token)
                payment = self._relevant_payment(db, event, snapshot)
                outcome = transition(subscription, event, snapshot, payment, now)
                result = LedgerResult(transition=outcome)

                if outcome.anomaly:
                    self._add_anomaly(db, notification_id, event, outcome.anomaly, snapshot)
                if subscription is not None and outcome.patch:
                    self._apply_patch(subscription, outcome.patch, event.kind)
                    db.flush()
                if subscription is not None and outcome.ledger is LedgerEffect.RECORD_RENEWAL:
                    renewal = self._insert_renewal(db, subscription, event, snapshot, now)
                    if renewal is not None:
                        result.payment_id = renewal.payment_id
                        result.renewal_recorded = True
                if payment is not None and outcome.ledger is LedgerEffect.REFUND:
                    for name, value in outcome.payment_patch.items():
                        setattr(payment, name, value)
                    result.payment_id = payment.payment_id

                if subscription is not None:
                    result.subscription_id = subscription.subscription_id
                    result.status = subscription.status
                    result.recurring_status = subscription.recurring_status

                IdempotencyGuard.mark_processed(db, notification_id, now)
                self._enqueue_audit(db, notification_id, event, result, snapshot, now)
        return result

    def record_failure(
        self,
        event: RenewalEvent,
        notification_id: str | None,
        reason: str,
        now: datetime | None = None,
    ) -> None:
        """Durably park a notification that a retry cannot fix."""

        now = now or datetime.now(timezone.utc)
        with self.session_factory() as db:
            with db.begin():
                self._add_anomaly(db, notification_id, event, reason)
                IdempotencyGuard.mark_processed(db, notification_id, now)
