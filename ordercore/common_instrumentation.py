"""
OpenTelemetry tracing for the order service

Spans are opened by the service layer through ``trace.get_tracer``; this
module only wires the provider, the OTLP exporter and the library
instrumentors (FastAPI requests, SQLAlchemy statements, httpx gateway calls).
"""
from typing import Optional
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
import logging

logger = logging.getLogger(__name__)


def setup_opentelemetry(
    service_name: str,
    otlp_endpoint: str = "http://localhost:4317",
    enabled: bool = True,
    environment: str = "dev",
    service_version: str = "1.0.0"
) -> Optional[TracerProvider]:
    """
    Install the global tracer provider and exporter

    Args:
        service_name: Name reported on every span
        otlp_endpoint: OTLP collector endpoint (gRPC)
        enabled: When False the no-op provider stays in place
        environment: Deployment environment attribute
        service_version: Service version attribute

    Returns:
        The installed provider, or None when tracing is disabled
    """
    if not enabled:
        logger.info("OpenTelemetry disabled, spans are no-ops")
        return None

    provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        DEPLOYMENT_ENVIRONMENT: environment,
    }))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
    )
    trace.set_tracer_provider(provider)

    # Notification gateway deliveries
    HTTPXClientInstrumentor().instrument()

    logger.info(f"OpenTelemetry initialized for {service_name} ({environment}), exporting to {otlp_endpoint}")
    return provider


def shutdown_opentelemetry(provider: Optional[TracerProvider]):
    """Flush buffered spans before the process exits"""
    if provider is None:
        return
    provider.shutdown()
    logger.info("OpenTelemetry span processor flushed")


def instrument_fastapi(app):
    """Trace every HTTP request handled by the app"""
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,ready")
    logger.info("FastAPI instrumented with OpenTelemetry")


def instrument_sqlalchemy(engine):
    """Trace every statement, including the stock UPDATEs and row locks"""
    SQLAlchemyInstrumentor().instrument(engine=engine)
    logger.info("SQLAlchemy instrumented with OpenTelemetry")
