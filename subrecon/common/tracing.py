"""OpenTelemetry wiring; a no-op when `TRACING_ENABLED=false`."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from subrecon.common.config import settings


# Resolves through the global provider, so spans are dropped until setup_tracing runs.
tracer = trace.get_tracer("subrecon.reconciler")


def setup_tracing(service_name: str) -> None:
    """Register an OTLP/HTTP exporting tracer provider for this process."""

    if not settings.tracing_enabled:
        return
    resource = Resource.create(
        {
            "service.name": service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Request spans for the webhook and internal routes; health and metrics are skipped."""

    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
