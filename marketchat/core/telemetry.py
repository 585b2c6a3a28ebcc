"""OpenTelemetry tracing setup for the API and the reconciliation layer."""

import logging
from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.aio_pika import AioPikaInstrumentor
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from marketchat.config import settings

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)


def setup_telemetry(app: "FastAPI") -> bool:
    """Configure OpenTelemetry tracing for the FastAPI application.

    This sets up:
    - TracerProvider with service name resource
    - OTLP exporter to send traces to the collector
    - FastAPI instrumentation for automatic request tracing

    Returns:
        True if tracing was enabled
    """
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        logger.info("Telemetry disabled: OTEL_EXPORTER_OTLP_ENDPOINT not configured")
        return False

    resource = Resource.create(
        {
            "service.name": settings.OTEL_SERVICE_NAME,
            "service.version": "1.0.0",
            "deployment.environment": "development" if settings.DEBUG else "production",
        }
    )
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    exporter = OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True)
    tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=tracer_provider,
        excluded_urls="health,api/docs,api/redoc,api/openapi.json",
    )
    logger.info(f"Telemetry enabled: exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    return True


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for manual span creation.

    Example:
        tracer = get_tracer(__name__)
        with tracer.start_as_current_span("reconcile.submit") as span:
            span.set_attribute("mutation.kind", "append_message")
    """
    return trace.get_tracer(name)


def instrument_clients() -> None:
    """Trace backend calls, database queries, cache writes and queue publishes."""
    HTTPXClientInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument(enable_commenter=True)
    RedisInstrumentor().instrument()
    AioPikaInstrumentor().instrument()
    logger.info("httpx, SQLAlchemy, Redis and aio-pika instrumentation enabled")


def setup_all_instrumentation(app: "FastAPI") -> None:
    """Setup telemetry and client instrumentation."""
    try:
        if setup_telemetry(app):
            instrument_clients()
    except Exception as e:
        logger.warning(f"Failed to setup telemetry: {e}")
