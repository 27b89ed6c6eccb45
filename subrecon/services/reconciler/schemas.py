"""Request/response schemas and the provider-agnostic event model."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PushMessage(BaseModel):
    """Cloud Pub/Sub push `message` object."""

    model_config = ConfigDict(populate_by_name=True)

    data: str | None = None
    message_id: str | None = Field(default=None, alias="messageId")
    publish_time: str | None = Field(default=None, alias="publishTime")
    attributes: dict[str, str] = Field(default_factory=dict)


class PushEnvelope(BaseModel):
    """Body of one push delivery."""

    message: PushMessage | None = None
    subscription: str | None = None


class RenewalEventKind(str, Enum):
    """Symbolic subscription lifecycle event, independent of provider codes."""

    PURCHASED = "PURCHASED"
    RENEWED = "RENEWED"
    RECOVERED = "RECOVERED"
    CANCELLED = "CANCELLED"
    ON_HOLD = "ON_HOLD"
    IN_GRACE_PERIOD = "IN_GRACE_PERIOD"
    RESTARTED = "RESTARTED"
    PAUSED = "PAUSED"
    PRICE_CHANGE_CONFIRMED = "PRICE_CHANGE_CONFIRMED"
    DEFERRED = "DEFERRED"
    PAUSE_SCHEDULE_CHANGED = "PAUSE_SCHEDULE_CHANGED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    UNKNOWN = "UNKNOWN"


class RenewalEvent(BaseModel):
    """Normalized notification; only a hint that provider state changed."""

    event_id: str | None = None
    kind: RenewalEventKind
    purchase_token: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    provider_code: int | None = None
    package_name: str | None = None
    event_time: datetime | None = None

    @property
    def event_type(self) -> str:
        """Name stored on the notification receipt, e.g. `GOOGLE_RENEWED`."""

        return f"GOOGLE_{self.kind.value}"


class ProviderSubscriptionSnapshot(BaseModel):
    """Authoritative provider-side view of one purchase token."""

    purchase_token: str
    product_id: str
    expiry: datetime | None = None
    start_time: datetime | None = None
    auto_renewing: bool = False
    order_id: str | None = None
    payment_state: int | None = None
    cancel_reason: int | None = None
    acknowledged: bool = False
    price_amount_micros: int | None = None
    currency: str | None = None
    status_code: int = 200
    gone: bool = False

    @property
    def is_trial(self) -> bool:
        return self.payment_state == 2

    def is_active(self, now: datetime | None = None) -> bool:
        """Unexpired and not awaiting an initial payment."""

        if self.gone or self.expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expiry > now and self.payment_state != 0


class WebhookAck(BaseModel):
    """Body returned to the push channel."""

    success: bool
    outcome: str
    detail: str | None = None


class SubscriptionView(BaseModel):
    """Reconciled subscription state as stored locally."""

    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    user_id: str
    plan_id: str
    status: str
    recurring_status: str
    end_date: datetime
    auto_renew: bool
    grace_period_end: datetime | None = None
    next_billing_date: datetime | None = None
    failed_attempts: int


class AnomalyView(BaseModel):
    """One unresolved reconciliation anomaly."""

    model_config = ConfigDict(from_attributes=True)

    anomaly_id: str
    notification_id: str | None = None
    event_type: str
    purchase_token: str | None = None
    reason: str
    created_at: datetime | None = None


class SweepResponse(BaseModel):
    """Summary of one out-of-band sweep run."""

    examined: int
    outcomes: dict[str, int]
