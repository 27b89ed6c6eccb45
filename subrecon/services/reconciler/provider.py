"""Google Play Developer API client used to re-fetch subscription truth.

A notification only says that *something* changed; the purchase resource
returned here is what the state machine trusts.

Setup required in Google Play Console / Cloud Console:
1. Create a service account with access to the app's financial data
2. Store its JSON key in GOOGLE_SERVICE_ACCOUNT_KEY
3. Set GOOGLE_PACKAGE_NAME to the application id

With no key configured the client calls GOOGLE_API_BASE_URL without an
Authorization header, which is what the local Play emulator expects.
"""

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any

import httpx
import jwt

from subrecon.common.config import CommonSettings
from subrecon.common.logging import logger
from subrecon.common.metrics import provider_fetch_seconds
from subrecon.services.reconciler.schemas import ProviderSubscriptionSnapshot


ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class FetchError(Exception):
    """Provider state could not be fetched; the notification stays retryable."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    @property
    def error_type(self) -> str:
        if self.status_code is None:
            return "transport"
        return f"http_{self.status_code}"


def _millis(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def parse_subscription_purchase(
    data: dict[str, Any], product_id: str, purchase_token: str
) -> ProviderSubscriptionSnapshot:
    """Map a v3 `SubscriptionPurchase` resource onto a snapshot."""

    try:
        micros = data.get("priceAmountMicros")
        return ProviderSubscriptionSnapshot(
            purchase_token=purchase_token,
            product_id=product_id,
            expiry=_millis(data.get("expiryTimeMillis")),
            start_time=_millis(data.get("startTimeMillis")),
            auto_renewing=bool(data.get("autoRenewing", False)),
            order_id=data.get("orderId") or None,
            payment_state=data.get("paymentState"),
            cancel_reason=data.get("cancelReason"),
            acknowledged=data.get("acknowledgementState") == 1,
            price_amount_micros=int(micros) if micros not in (None, "") else None,
            currency=data.get("priceCurrencyCode"),
        )
    except (TypeError, ValueError, OverflowError, OSError) as exc:
        raise FetchError(f"malformed subscription purchase: {exc}") from exc


class GooglePlayClient:
    """Fetches `purchases.subscriptions` resources with a bounded timeout."""

    def __init__(self, settings: CommonSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.transport = transport
        self._credentials: dict[str, Any] | None = None
        if settings.google_service_account_key:
            self._credentials = json.loads(settings.google_service_account_key)
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds, transport=self.transport)

    def _assertion(self) -> str:
        """Self-signed service-account JWT exchanged for an access token."""

        now = int(time.time())
        claims = {
            "iss": self._credentials["client_email"],
            "scope": ANDROID_PUBLISHER_SCOPE,
            "aud": self._credentials.get("token_uri", self.settings.google_token_url),
            "iat": now,
            "exp": now + 3600,
        }
        headers = {"kid": self._credentials.get("private_key_id")}
        return jwt.encode(claims, self._credentials["private_key"], algorithm="RS256", headers=headers)

    async def _authorization(self, client: httpx.AsyncClient) -> dict[str, str]:
        if self._credentials is None:
            return {}
        async with self._token_lock:
            # Refresh a minute early so a token never expires mid-request.
            if self._access_token is None or time.time() > self._token_expires_at - 60:
                token_url = self._credentials.get("token_uri", self.settings.google_token_url)
                try:
                    assertion = self._assertion()
                except (jwt.PyJWTError, KeyError, TypeError, ValueError) as exc:
                    raise FetchError(f"service account assertion failed: {exc}") from exc
                resp = await client.post(
                    token_url,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                )
                if resp.status_code != 200:
                    raise FetchError("service account token exchange failed", status_code=resp.status_code)
                try:
                    body = resp.json()
                    access_token = body["access_token"]
                    expires_in = int(body.get("expires_in", 3600))
                except (AttributeError, KeyError, TypeError, ValueError) as exc:
                    raise FetchError("malformed token response", status_code=resp.status_code) from exc
                self._access_token = access_token
                self._token_expires_at = time.time() + expires_in
        return {"Authorization": f"Bearer {self._access_token}"}

    def _purchase_url(self, product_id: str, purchase_token: str) -> str:
        base = self.settings.google_api_base_url.rstrip("/")
        package = self.settings.google_package_name
        return (
            f"{base}/androidpublisher/v3/applications/{package}"
            f"/purchases/subscriptions/{product_id}/tokens/{purchase_token}"
        )

    async def _get(self, product_id: str, purchase_token: str) -> ProviderSubscriptionSnapshot:
        async with self._client() as client:
            headers = await self._authorization(client)
            resp = await client.get(self._purchase_url(product_id, purchase_token), headers=headers)

        if resp.status_code == 410:
            # Purchase expired long ago or was refunded; a definitive answer, not a failure.
            return ProviderSubscriptionSnapshot(
                purchase_token=purchase_token, product_id=product_id, status_code=410, gone=True
            )
        if resp.status_code == 404:
            raise FetchError("purchase token not found", status_code=404)
        if resp.status_code >= 400:
            raise FetchError(f"provider returned {resp.status_code}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise FetchError("provider response is not JSON", status_code=resp.status_code) from exc
        if not isinstance(data, dict):
            raise FetchError("provider response is not an object", status_code=resp.status_code)
        return parse_subscription_purchase(data, product_id, purchase_token)

    async def fetch(self, product_id: str, purchase_token: str) -> ProviderSubscriptionSnapshot:
        """Return the provider's current view or raise `FetchError`."""

        start = time.perf_counter()
        try:
            return await asyncio.wait_for(
                self._get(product_id, purchase_token),
                timeout=self.settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise FetchError("provider request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("provider_transport_error product_id=%s error=%s", product_id, exc)
            raise FetchError(f"provider unreachable: {exc}") from exc
        except FetchError:
            raise
        except Exception as exc:
            logger.exception("provider_client_error product_id=%s", product_id)
            raise FetchError(f"provider client error: {type(exc).__name__}: {exc}") from exc
        finally:
            provider_fetch_seconds.labels(service=self.settings.service_name).observe(
                max(0.0, time.perf_counter() - start)
            )
