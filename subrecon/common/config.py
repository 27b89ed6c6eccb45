"""Central environment-driven settings for the reconciler service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "reconciler"
    log_level: str = "INFO"
    environment: str = "production"
    postgres_dsn: str
    api_key: str
    db_statement_timeout_ms: int = 5000

    # Pub/Sub push authentication.
    pubsub_verification_token: str | None = None
    pubsub_subscription: str | None = None
    allow_unverified_webhooks: bool = False

    # Google Play Developer API.
    google_package_name: str = ""
    google_service_account_key: str | None = None
    google_api_base_url: str = "https://androidpublisher.googleapis.com"
    google_token_url: str = "https://oauth2.googleapis.com/token"
    provider_timeout_seconds: float = 10.0

    notification_claim_timeout_seconds: int = 120
    default_currency: str = "KRW"

    kafka_bootstrap_servers: str = "kafka:9092"
    audit_topic: str = "subscriptions.audit"
    audit_publisher_enabled: bool = True
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def unverified_webhooks_allowed(self) -> bool:
        """Fail-open is only possible when both flags are set explicitly."""

        return self.is_development and self.allow_unverified_webhooks


settings = CommonSettings()
