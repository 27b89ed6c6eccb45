"""Push authentication, including the explicit development fail-open mode."""

from subrecon.common.config import CommonSettings
from subrecon.services.reconciler.authenticator import WebhookAuthenticator


def _settings(**overrides) -> CommonSettings:
    fields = dict(postgres_dsn="sqlite+pysqlite://", api_key="k", pubsub_verification_token="secret")
    fields.update(overrides)
    return CommonSettings(**fields)


def test_matching_token_is_accepted():
    assert WebhookAuthenticator(_settings()).verify("secret", None).valid


def test_missing_and_wrong_tokens_are_rejected():
    auth = WebhookAuthenticator(_settings())

    assert auth.verify(None, None).reason == "missing verification token"
    assert auth.verify("guess", None).reason == "invalid verification token"


def test_subscription_channel_must_match_when_configured():
    auth = WebhookAuthenticator(_settings(pubsub_subscription="play-rtdn"))

    assert auth.verify("secret", "projects/demo/subscriptions/play-rtdn").valid
    assert auth.verify("secret", "projects/demo/subscriptions/other").reason == "invalid subscription"


def test_unconfigured_token_fails_closed():
    auth = WebhookAuthenticator(_settings(pubsub_verification_token=None, environment="development"))

    result = auth.verify(None, None)

    assert not result.valid
    assert result.reason == "webhook verification not configured"


def test_fail_open_needs_development_and_explicit_flag():
    dev_open = _settings(pubsub_verification_token=None, environment="development", allow_unverified_webhooks=True)
    prod_open = _settings(pubsub_verification_token=None, environment="production", allow_unverified_webhooks=True)

    assert WebhookAuthenticator(dev_open).verify(None, None).valid
    assert not WebhookAuthenticator(prod_open).verify(None, None).valid
