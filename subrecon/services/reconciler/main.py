"""HTTP surface for the subscription reconciler and its background workers."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select

from subrecon.common.config import settings
from subrecon.common.db import SessionLocal
from subrecon.common.logging import configure_logging, trace_id_ctx
from subrecon.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from subrecon.common.startup import log_startup_config, warn_insecure_webhook_mode
from subrecon.common.tracing import instrument_app, setup_tracing
from subrecon.services.reconciler.models import ReconciliationAnomaly, Subscription
from subrecon.services.reconciler.provider import GooglePlayClient
from subrecon.services.reconciler.schemas import (
    AnomalyView,
    PushEnvelope,
    SubscriptionView,
    SweepResponse,
    WebhookAck,
)
from subrecon.services.reconciler.service import ReconciliationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "ENVIRONMENT",
        "POSTGRES_DSN",
        "GOOGLE_PACKAGE_NAME",
        "GOOGLE_API_BASE_URL",
        "PUBSUB_VERIFICATION_TOKEN",
        "PUBSUB_SUBSCRIPTION",
        "ALLOW_UNVERIFIED_WEBHOOKS",
        "KAFKA_BOOTSTRAP_SERVERS",
    ],
)
warn_insecure_webhook_mode()
service = ReconciliationService(SessionLocal, GooglePlayClient(settings), service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the audit outbox publisher with app lifecycle."""

    publisher_task = None
    if settings.audit_publisher_enabled:
        publisher_task = asyncio.create_task(service.outbox_publisher())
    yield
    if publisher_task is not None:
        publisher_task.cancel()
    await service.kafka.close()


app = FastAPI(title="SubRecon Reconciler", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-cloud-trace-context") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject internal requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.post("/webhooks/google-play", response_model=WebhookAck)
async def google_play_notification(request: Request, token: str | None = Query(default=None)):
    """Pub/Sub push endpoint for Play real-time developer notifications.

    200 acknowledges (including no-ops and recorded anomalies), 400 rejects a
    malformed payload, 403 a failed authentication and 500 asks for redelivery.
    """

    try:
        envelope = PushEnvelope.model_validate(await request.json())
    except ValueError:
        return JSONResponse(
            status_code=400,
            content=WebhookAck(success=False, outcome="MALFORMED", detail="invalid envelope").model_dump(),
        )

    result = await service.handle_push(envelope, token)
    ack = WebhookAck(success=result.acknowledged, outcome=result.outcome.value, detail=result.detail)
    return JSONResponse(status_code=result.http_status, content=ack.model_dump())


@app.post("/internal/sweep", response_model=SweepResponse)
async def sweep(limit: int = Query(default=100, ge=1, le=1000), x_api_key: str | None = Header(default=None)):
    """Retry unprocessed notifications whose delivery failed or was interrupted."""

    enforce_api_key(x_api_key)
    examined, outcomes = await service.sweep_pending(limit)
    return SweepResponse(examined=examined, outcomes=outcomes)


@app.get("/internal/anomalies", response_model=list[AnomalyView])
def list_anomalies(limit: int = Query(default=100, ge=1, le=1000), x_api_key: str | None = Header(default=None)):
    """Unresolved anomalies awaiting backfill, oldest first."""

    enforce_api_key(x_api_key)
    with service.session_factory() as db:
        rows = db.execute(
            select(ReconciliationAnomaly)
            .where(ReconciliationAnomaly.resolved.is_(False))
            .order_by(ReconciliationAnomaly.created_at)
            .limit(limit)
        ).scalars().all()
        return [AnomalyView.model_validate(row) for row in rows]


@app.get("/internal/subscriptions/{subscription_id}", response_model=SubscriptionView)
def get_subscription(subscription_id: str, x_api_key: str | None = Header(default=None)):
    """Fetch the reconciled view of one subscription."""

    enforce_api_key(x_api_key)
    with service.session_factory() as db:
        subscription = db.get(Subscription, subscription_id)
        if not subscription:
            raise HTTPException(status_code=404, detail="subscription not found")
        return SubscriptionView.model_validate(subscription)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
