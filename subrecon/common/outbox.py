"""Transactional outbox helpers for audit events.

Rows are written by the ledger writer in the same transaction as the state
change they describe, then claimed and drained by the publisher loop. The
helpers take the outbox model so the table definition stays with the service.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from subrecon.common.events import EventEnvelope
from subrecon.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


PENDING_STATUSES = ("PENDING", "PROCESSING")


def enqueue_outbox_event(db, outbox_model, topic: str, envelope: EventEnvelope) -> None:
    """Stage one envelope for publishing inside the caller's transaction."""

    db.add(
        outbox_model(
            aggregate_type="subscription",
            aggregate_id=envelope.aggregate_id,
            event_type=envelope.event_type,
            topic=topic,
            payload=envelope.model_dump(),
            status="PENDING",
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim a batch of pending or stale rows for publishing.

    Rows are locked with `SKIP LOCKED` so concurrent publishers never claim the
    same row; the claim becomes visible when the caller commits.
    """

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    rows = db.execute(
        select(table.c.id, table.c.topic, table.c.payload)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()
    if not rows:
        return []
    db.execute(
        update(table)
        .where(table.c.id.in_([row.id for row in rows]))
        .values(status="PROCESSING", sent_at=now)
    )
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(PENDING_STATUSES))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(PENDING_STATUSES))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
