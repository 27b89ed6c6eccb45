"""Pub/Sub push authentication.

Push subscriptions are configured with `?token=<secret>` on the endpoint URL;
the token is the only proof that a request came through our subscription.
"""

import hmac
from dataclasses import dataclass

from subrecon.common.config import CommonSettings
from subrecon.common.logging import logger


@dataclass(frozen=True)
class AuthResult:
    valid: bool
    reason: str | None = None


class WebhookAuthenticator:
    """Checks the shared verification token and, optionally, the channel name."""

    def __init__(self, settings: CommonSettings) -> None:
        self.settings = settings

    def verify(self, token: str | None, subscription: str | None) -> AuthResult:
        expected = self.settings.pubsub_verification_token
        if not expected:
            if self.settings.unverified_webhooks_allowed:
                logger.warning("webhook_auth_skipped reason=no_token_configured mode=development")
                return AuthResult(True)
            logger.error("webhook_auth_failed reason=verification_not_configured")
            return AuthResult(False, "webhook verification not configured")

        if not token:
            return AuthResult(False, "missing verification token")
        # compare_digest keeps comparison time independent of where strings differ.
        if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            return AuthResult(False, "invalid verification token")

        channel = self.settings.pubsub_subscription
        if channel and subscription and channel not in subscription:
            logger.error("webhook_auth_failed reason=unexpected_subscription subscription=%s", subscription)
            return AuthResult(False, "invalid subscription")
        return AuthResult(True)
