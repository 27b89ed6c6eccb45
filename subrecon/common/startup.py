"""Startup-time helpers for safe config logging."""

import os

from subrecon.common.config import settings
from subrecon.common.logging import logger


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(secret in name for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN", "DSN"]):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)


def warn_insecure_webhook_mode() -> None:
    """Flag configurations that weaken webhook authentication."""

    if settings.pubsub_verification_token:
        return
    if settings.unverified_webhooks_allowed:
        logger.warning(
            "webhook_auth_disabled environment=%s allow_unverified_webhooks=true "
            "unauthenticated pushes WILL be accepted",
            settings.environment,
        )
    else:
        logger.error(
            "webhook_auth_unconfigured environment=%s all pushes will be rejected with 403",
            settings.environment,
        )
