"""Shared fixtures: in-memory database, seeded subscription, fake provider."""

import base64
import json
import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time, so the environment must be in place first.
os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("PUBSUB_VERIFICATION_TOKEN", "test-push-token")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("AUDIT_PUBLISHER_ENABLED", "false")
os.environ.setdefault("GOOGLE_PACKAGE_NAME", "com.example.app")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from subrecon.common.db import Base
from subrecon.services.reconciler.models import Payment, Plan, Subscription
from subrecon.services.reconciler.schemas import ProviderSubscriptionSnapshot


T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
PURCHASE_TOKEN = "token-1"
PRODUCT_ID = "premium_monthly"
INITIAL_ORDER = "GPA.3312-5521-0001-00000"


def utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; compare everything as UTC."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class FakeFetcher:
    """Stands in for the Play client; snapshots are configured per token."""

    def __init__(self) -> None:
        self.snapshots: dict[str, ProviderSubscriptionSnapshot] = {}
        self.error: Exception | None = None
        self.calls = 0

    def set(self, purchase_token: str = PURCHASE_TOKEN, **fields) -> ProviderSubscriptionSnapshot:
        fields.setdefault("product_id", PRODUCT_ID)
        snapshot = ProviderSubscriptionSnapshot(purchase_token=purchase_token, **fields)
        self.snapshots[purchase_token] = snapshot
        return snapshot

    async def fetch(self, product_id: str, purchase_token: str) -> ProviderSubscriptionSnapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if purchase_token in self.snapshots:
            return self.snapshots[purchase_token]
        return ProviderSubscriptionSnapshot(
            purchase_token=purchase_token, product_id=product_id, status_code=410, gone=True
        )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def seeded(session_factory):
    """One ACTIVE/ACTIVE subscription funded by `token-1`."""

    with session_factory() as db:
        db.add(
            Plan(
                plan_id="plan-monthly",
                name="Premium Monthly",
                product_id=PRODUCT_ID,
                duration_days=30,
                amount_cents=9900,
                currency="KRW",
                is_active=True,
            )
        )
        db.add(
            Subscription(
                subscription_id="sub-1",
                user_id="user-1",
                plan_id="plan-monthly",
                status="ACTIVE",
                recurring_status="ACTIVE",
                start_date=T0,
                end_date=T0 + timedelta(days=30),
                auto_renew=True,
                next_billing_date=T0 + timedelta(days=30),
                failed_attempts=0,
            )
        )
        db.add(
            Payment(
                payment_id="pay-initial",
                user_id="user-1",
                plan_id="plan-monthly",
                subscription_id="sub-1",
                store_transaction_id=PURCHASE_TOKEN,
                provider_order_id=INITIAL_ORDER,
                status="PAID",
                amount_cents=9900,
                currency="KRW",
                payment_type="INITIAL_SUBSCRIPTION",
                payment_source="GOOGLE",
                approved_at=T0,
                created_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
            )
        )
        db.commit()
    return "sub-1"


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def make_push():
    """Build a Pub/Sub push body carrying one subscription notification."""

    def _make(
        code: int,
        message_id: str | None,
        purchase_token: str = PURCHASE_TOKEN,
        product_id: str = PRODUCT_ID,
        subscription: str = "projects/demo/subscriptions/play-rtdn",
    ) -> dict:
        notification = {
            "version": "1.0",
            "packageName": "com.example.app",
            "eventTimeMillis": "1767225600000",
            "subscriptionNotification": {
                "version": "1.0",
                "notificationType": code,
                "purchaseToken": purchase_token,
                "subscriptionId": product_id,
            },
        }
        message = {
            "data": base64.b64encode(json.dumps(notification).encode("utf-8")).decode("ascii"),
            "publishTime": "2026-01-01T00:00:00Z",
        }
        if message_id is not None:
            message["messageId"] = message_id
        return {"message": message, "subscription": subscription}

    return _make
