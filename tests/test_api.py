"""HTTP contract of the reconciler service."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from subrecon.common.config import settings
from subrecon.services.reconciler import main
from subrecon.services.reconciler.authenticator import WebhookAuthenticator
from subrecon.services.reconciler.provider import FetchError
from subrecon.services.reconciler.service import ReconciliationService

from conftest import INITIAL_ORDER, T0


WEBHOOK = "/webhooks/google-play?token=test-push-token"
HEADERS = {"x-api-key": "test-api-key"}


@pytest.fixture
def client(session_factory, seeded, fetcher, monkeypatch):
    service = ReconciliationService(session_factory, fetcher, authenticator=WebhookAuthenticator(settings))
    monkeypatch.setattr(main, "service", service)
    return TestClient(main.app)


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_renewal_is_acknowledged(client, fetcher, make_push):
    fetcher.set(expiry=T0 + timedelta(days=60), order_id=f"{INITIAL_ORDER}..0")

    resp = client.post(WEBHOOK, json=make_push(2, "m-1"))

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "outcome": "PROCESSED", "detail": None}
    assert client.post(WEBHOOK, json=make_push(2, "m-1")).json()["outcome"] == "DUPLICATE"


def test_wrong_token_is_forbidden(client, make_push):
    resp = client.post("/webhooks/google-play?token=nope", json=make_push(2, "m-1"))

    assert resp.status_code == 403
    assert resp.json()["success"] is False


def test_missing_token_is_forbidden(client, make_push):
    assert client.post("/webhooks/google-play", json=make_push(2, "m-1")).status_code == 403


@pytest.mark.parametrize(
    "body",
    [
        {"message": {"messageId": "m-1"}},
        {"message": {"data": "%%%", "messageId": "m-1"}},
        {"subscription": "projects/demo/subscriptions/play-rtdn"},
    ],
)
def test_malformed_push_is_bad_request(client, body):
    resp = client.post(WEBHOOK, json=body)

    assert resp.status_code == 400
    assert resp.json()["outcome"] == "MALFORMED"


def test_non_json_body_is_bad_request(client):
    resp = client.post(WEBHOOK, content=b"not json", headers={"content-type": "application/json"})

    assert resp.status_code == 400


def test_provider_outage_returns_server_error(client, fetcher, make_push):
    fetcher.error = FetchError("provider returned 503", status_code=503)

    resp = client.post(WEBHOOK, json=make_push(2, "m-1"))

    assert resp.status_code == 500
    assert resp.json()["outcome"] == "RETRY"


def test_internal_endpoints_require_api_key(client):
    assert client.get("/internal/anomalies").status_code == 401
    assert client.post("/internal/sweep").status_code == 401
    assert client.get("/internal/subscriptions/sub-1", headers={"x-api-key": "wrong"}).status_code == 401


def test_subscription_view(client):
    resp = client.get("/internal/subscriptions/sub-1", headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json()["recurring_status"] == "ACTIVE"
    assert client.get("/internal/subscriptions/missing", headers=HEADERS).status_code == 404


def test_anomalies_and_sweep(client, fetcher, make_push):
    fetcher.set(purchase_token="token-orphan", expiry=T0 + timedelta(days=30))
    client.post(WEBHOOK, json=make_push(2, "m-orphan", purchase_token="token-orphan"))

    anomalies = client.get("/internal/anomalies", headers=HEADERS).json()
    sweep = client.post("/internal/sweep", headers=HEADERS).json()

    assert [row["notification_id"] for row in anomalies] == ["m-orphan"]
    assert sweep == {"examined": 0, "outcomes": {}}


def test_metrics_endpoint(client):
    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "notifications_received_total" in resp.text
