"""Notification-level deduplication backed by `processed_notifications`.

A receipt row is inserted before any provider call or state change. Its
primary key makes the insert an atomic insert-if-absent; the `claimed_at`
lease distinguishes an in-flight delivery from an earlier attempt that failed
retryably (claim released) or crashed (claim gone stale).
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from subrecon.common.logging import logger
from subrecon.services.reconciler.models import ProcessedNotification


class Admission(str, Enum):
    ADMITTED = "ADMITTED"
    DUPLICATE = "DUPLICATE"
    NOT_TRACKED = "NOT_TRACKED"


class IdempotencyGuard:
    """Admits each notification id for processing at most once at a time."""

    def __init__(self, session_factory, claim_timeout_seconds: int = 120) -> None:
        self.session_factory = session_factory
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    def admit(
        self,
        notification_id: str | None,
        event_type: str,
        purchase_token: str | None,
        payload: dict[str, Any],
        now: datetime | None = None,
    ) -> Admission:
        if not notification_id:
            # Legacy pushes without an id fall back to payment-level uniqueness.
            logger.warning("notification_untracked event_type=%s reason=missing_notification_id", event_type)
            return Admission.NOT_TRACKED

        now = now or datetime.now(timezone.utc)
        with self.session_factory() as db:
            db.add(
                ProcessedNotification(
                    notification_id=notification_id,
                    event_type=event_type,
                    purchase_token=purchase_token,
                    payload=payload,
                    processed=False,
                    attempts=1,
                    claimed_at=now,
                )
            )
            try:
                db.commit()
                return Admission.ADMITTED
            except IntegrityError:
                db.rollback()

            table = ProcessedNotification
            result = db.execute(
                update(table)
                .where(
                    table.notification_id == notification_id,
                    table.processed.is_(False),
                    or_(table.claimed_at.is_(None), table.claimed_at < now - self.claim_timeout),
                )
                .values(claimed_at=now, attempts=table.attempts + 1)
            )
            db.commit()
            if result.rowcount == 1:
                logger.info("notification_reclaimed notification_id=%s", notification_id)
                return Admission.ADMITTED
        return Admission.DUPLICATE

    def release(self, notification_id: str | None, error: str) -> None:
        """Drop the claim after a retryable failure so a redelivery can retry."""

        if not notification_id:
            return
        with self.session_factory() as db:
            db.execute(
                update(ProcessedNotification)
                .where(
                    ProcessedNotification.notification_id == notification_id,
                    ProcessedNotification.processed.is_(False),
                )
                .values(claimed_at=None, last_error=error[:500])
            )
            db.commit()

    @staticmethod
    def mark_processed(db, notification_id: str | None, now: datetime) -> None:
        """Flag exactly one receipt as processed inside the caller's transaction."""

        if not notification_id:
            return
        db.execute(
            update(ProcessedNotification)
            .where(ProcessedNotification.notification_id == notification_id)
            .values(processed=True, processed_at=now, claimed_at=None, last_error=None)
        )

    def pending(self, limit: int = 100, now: datetime | None = None) -> list[ProcessedNotification]:
        """Unprocessed receipts whose claim is released or stale, oldest first."""

        now = now or datetime.now(timezone.utc)
        table = ProcessedNotification
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(table)
                    .where(
                        table.processed.is_(False),
                        or_(table.claimed_at.is_(None), table.claimed_at < now - self.claim_timeout),
                    )
                    .order_by(table.created_at)
                    .limit(limit)
                ).scalars()
            )

    def claim_for_sweep(self, notification_id: str, now: datetime | None = None) -> bool:
        """Take the lease on an existing receipt; False if someone else holds it."""

        now = now or datetime.now(timezone.utc)
        table = ProcessedNotification
        with self.session_factory() as db:
            result = db.execute(
                update(table)
                .where(
                    table.notification_id == notification_id,
                    table.processed.is_(False),
                    or_(table.claimed_at.is_(None), table.claimed_at < now - self.claim_timeout),
                )
                .values(claimed_at=now, attempts=table.attempts + 1)
            )
            db.commit()
            return result.rowcount == 1
