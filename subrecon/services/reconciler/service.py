"""Reconciliation orchestration.

Sequences authentication, decoding, deduplication, the provider re-fetch and
the ledger transaction for each push, and owns the retry contract with the
push channel: only failures a redelivery can fix are reported as failures.
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from subrecon.common.config import settings
from subrecon.common.events import EventEnvelope, KafkaBus
from subrecon.common.logging import logger, notification_id_ctx, purchase_token_ctx
from subrecon.common.metrics import (
    duplicate_notifications_total,
    notifications_received_total,
    provider_fetch_failures_total,
    reconcile_latency_seconds,
    webhook_rejections_total,
)
from subrecon.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from subrecon.common.tracing import tracer
from subrecon.services.reconciler.authenticator import WebhookAuthenticator
from subrecon.services.reconciler.decoder import DecodeError, decode_push_data
from subrecon.services.reconciler.idempotency import Admission, IdempotencyGuard
from subrecon.services.reconciler.ledger import LedgerResult, LedgerWriter
from subrecon.services.reconciler.models import OutboxEvent
from subrecon.services.reconciler.provider import FetchError
from subrecon.services.reconciler.schemas import PushEnvelope, RenewalEvent


class ReconcileOutcome(str, Enum):
    PROCESSED = "PROCESSED"
    ANOMALY = "ANOMALY"
    DUPLICATE = "DUPLICATE"
    TEST = "TEST"
    IGNORED = "IGNORED"
    RETRY = "RETRY"
    REJECTED = "REJECTED"
    MALFORMED = "MALFORMED"


HTTP_STATUS = {
    ReconcileOutcome.PROCESSED: 200,
    ReconcileOutcome.ANOMALY: 200,
    ReconcileOutcome.DUPLICATE: 200,
    ReconcileOutcome.TEST: 200,
    ReconcileOutcome.IGNORED: 200,
    ReconcileOutcome.RETRY: 500,
    ReconcileOutcome.REJECTED: 403,
    ReconcileOutcome.MALFORMED: 400,
}


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    detail: str | None = None
    ledger: LedgerResult | None = None

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.outcome]

    @property
    def acknowledged(self) -> bool:
        return self.http_status == 200


def _is_transient(exc: Exception) -> bool:
    """Database failures a later redelivery can reasonably succeed on."""

    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class ReconciliationService:
    """Entry point wiring authenticator, decoder, guard, fetcher and ledger."""

    def __init__(
        self,
        session_factory,
        fetcher,
        authenticator: WebhookAuthenticator | None = None,
        service_name: str = "reconciler",
    ) -> None:
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.authenticator = authenticator or WebhookAuthenticator(settings)
        self.guard = IdempotencyGuard(session_factory, settings.notification_claim_timeout_seconds)
        self.ledger = LedgerWriter(session_factory, service_name=service_name)
        self.kafka = KafkaBus()
        self.service_name = service_name

    def _reject(self, outcome: ReconcileOutcome, reason: str) -> ReconcileResult:
        webhook_rejections_total.labels(service=self.service_name, reason=reason).inc()
        return ReconcileResult(outcome, detail=reason)

    async def handle_push(self, envelope: PushEnvelope, token: str | None) -> ReconcileResult:
        """Handle one push delivery end to end."""

        auth = self.authenticator.verify(token, envelope.subscription)
        if not auth.valid:
            logger.error("webhook_rejected reason=%s", auth.reason)
            return self._reject(ReconcileOutcome.REJECTED, auth.reason or "unauthenticated")

        message = envelope.message
        if message is None or not message.data:
            logger.error("webhook_malformed reason=missing_message_data")
            return self._reject(ReconcileOutcome.MALFORMED, "missing message data")

        try:
            decoded = decode_push_data(message.data, message.message_id)
        except DecodeError as exc:
            logger.error("notification_decode_failed message_id=%s error=%s", message.message_id, exc)
            return self._reject(ReconcileOutcome.MALFORMED, "invalid notification")

        if decoded.is_test:
            logger.info("test_notification_received message_id=%s", message.message_id)
            return ReconcileResult(ReconcileOutcome.TEST)
        if decoded.event is None:
            logger.info("non_subscription_notification_ignored message_id=%s", message.message_id)
            return ReconcileResult(ReconcileOutcome.IGNORED)

        payload = {
            "event": decoded.event.model_dump(mode="json"),
            "notification": decoded.raw,
            "message_id": message.message_id,
            "publish_time": message.publish_time,
            "subscription": envelope.subscription,
        }
        return await self.reconcile(decoded.event, payload)

    async def reconcile(self, event: RenewalEvent, payload: dict[str, Any], admit: bool = True) -> ReconcileResult:
        """Dedupe, re-fetch provider truth, and apply the transition.

        `admit=False` is used by the sweep, which already holds the claim.
        """

        start = time.perf_counter()
        notification_token = notification_id_ctx.set(event.event_id or "")
        purchase_token = purchase_token_ctx.set(event.purchase_token)
        result = ReconcileResult(ReconcileOutcome.RETRY)
        try:
            with tracer.start_as_current_span("reconcile_notification") as span:
                span.set_attribute("subrecon.kind", event.kind.value)
                span.set_attribute("subrecon.notification_id", event.event_id or "")
                result = await self._reconcile(event, payload, admit)
                span.set_attribute("subrecon.outcome", result.outcome.value)
            return result
        finally:
            reconcile_latency_seconds.labels(service=self.service_name, outcome=result.outcome.value).observe(
                max(0.0, time.perf_counter() - start)
            )
            notification_id_ctx.reset(notification_token)
            purchase_token_ctx.reset(purchase_token)

    async def _reconcile(self, event: RenewalEvent, payload: dict[str, Any], admit: bool) -> ReconcileResult:
        notifications_received_total.labels(service=self.service_name, kind=event.kind.value).inc()
        logger.info(
            "notification_received kind=%s provider_code=%s product_id=%s",
            event.kind.value,
            event.provider_code,
            event.product_id,
        )

        if admit:
            try:
                admission = self.guard.admit(event.event_id, event.event_type, event.purchase_token, payload)
            except SQLAlchemyError as exc:
                logger.error("idempotency_guard_unavailable error=%s", exc)
                return ReconcileResult(ReconcileOutcome.RETRY, detail="data store unavailable")
            if admission is Admission.DUPLICATE:
                logger.info("duplicate notification skipped kind=%s", event.kind.value)
                duplicate_notifications_total.labels(service=self.service_name).inc()
                return ReconcileResult(ReconcileOutcome.DUPLICATE)

        try:
            snapshot = await self.fetcher.fetch(event.product_id, event.purchase_token)
        except FetchError as exc:
            provider_fetch_failures_total.labels(service=self.service_name, error_type=exc.error_type).inc()
            logger.warning("provider_fetch_failed kind=%s error=%s", event.kind.value, exc)
            self.guard.release(event.event_id, f"fetch: {exc}")
            return ReconcileResult(ReconcileOutcome.RETRY, detail="provider unavailable")
        except asyncio.CancelledError:
            self.guard.release(event.event_id, "cancelled before commit")
            raise
        except Exception as exc:
            provider_fetch_failures_total.labels(service=self.service_name, error_type="unexpected").inc()
            logger.exception("provider_fetch_unexpected_error kind=%s error=%s", event.kind.value, exc)
            self.guard.release(event.event_id, f"fetch: {type(exc).__name__}: {exc}"[:500])
            return ReconcileResult(ReconcileOutcome.RETRY, detail="provider unavailable")

        try:
            ledger_result = self.ledger.apply(event, snapshot, event.event_id)
        except SQLAlchemyError as exc:
            if _is_transient(exc):
                logger.error("ledger_transient_failure kind=%s error=%s", event.kind.value, exc)
                self.guard.release(event.event_id, f"ledger: {exc}")
                return ReconcileResult(ReconcileOutcome.RETRY, detail="data store unavailable")
            return self._park(event, exc)
        except Exception as exc:
            return self._park(event, exc)

        self._audit(event, ledger_result)
        if ledger_result.transition.anomaly:
            return ReconcileResult(ReconcileOutcome.ANOMALY, detail=ledger_result.transition.anomaly, ledger=ledger_result)
        return ReconcileResult(ReconcileOutcome.PROCESSED, ledger=ledger_result)

    def _park(self, event: RenewalEvent, exc: Exception) -> ReconcileResult:
        """Record a non-retryable processing failure and acknowledge it."""

        logger.exception("reconciliation_failed kind=%s error=%s", event.kind.value, exc)
        try:
            self.ledger.record_failure(event, event.event_id, f"processing error: {type(exc).__name__}: {exc}"[:500])
        except SQLAlchemyError as record_exc:
            # Could not durably record it; let the provider redeliver instead.
            logger.error("anomaly_record_failed error=%s", record_exc)
            self.guard.release(event.event_id, f"unrecorded failure: {exc}")
            return ReconcileResult(ReconcileOutcome.RETRY, detail="data store unavailable")
        return ReconcileResult(ReconcileOutcome.ANOMALY, detail="processing error recorded")

    def _audit(self, event: RenewalEvent, result: LedgerResult) -> None:
        logger.info(
            "subscription_reconciled kind=%s subscription_id=%s status=%s recurring_status=%s "
            "ledger_effect=%s payment_id=%s changed=%s note=%s",
            event.kind.value,
            result.subscription_id,
            result.status,
            result.recurring_status,
            result.transition.ledger.value,
            result.payment_id,
            result.transition.changes_state,
            result.transition.note or "-",
        )

    async def sweep_pending(self, limit: int = 100) -> tuple[int, dict[str, int]]:
        """Retry receipts left unprocessed by failed or interrupted deliveries."""

        rows = self.guard.pending(limit)
        outcomes: Counter[str] = Counter()
        for row in rows:
            event_data = (row.payload or {}).get("event")
            if not event_data:
                outcomes["UNREPLAYABLE"] += 1
                continue
            if not self.guard.claim_for_sweep(row.notification_id):
                outcomes["BUSY"] += 1
                continue
            event = RenewalEvent.model_validate(event_data)
            result = await self.reconcile(event, row.payload, admit=False)
            outcomes[result.outcome.value] += 1
        if rows:
            logger.info("sweep_completed examined=%s outcomes=%s", len(rows), dict(outcomes))
        return len(rows), dict(outcomes)

    async def publish_outbox_batch(self, limit: int = 100) -> int:
        """Drain one batch of audit events to Kafka; returns rows published."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=limit)
            update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
            db.commit()
        published = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
                published += 1
            except Exception as exc:
                logger.exception("audit outbox publish failed: %s", exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                    db.commit()
        return published

    async def outbox_publisher(self) -> None:
        """Continuously publish audit outbox rows."""

        while True:
            try:
                await self.publish_outbox_batch()
            except SQLAlchemyError as exc:
                logger.error("audit outbox claim failed: %s", exc)
            await asyncio.sleep(0.5)
