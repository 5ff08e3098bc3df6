"""
Distributed Tracing with OpenTelemetry.

Spans cover the HTTP request, each SQL statement and the image provider
call. Everything here is a no-op unless TRACING_ENABLED is set.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from app.config import settings

SpanValue = str | int | float | bool


def setup_tracing() -> None:
    """Install a global TracerProvider exporting to the OTLP collector."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Must run after the app is created and before it serves requests."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries on an async engine through its sync core."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)


def to_span_value(value: Any) -> SpanValue:
    """OpenTelemetry attributes accept primitives only."""
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Set each attribute that is not None."""
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, to_span_value(value))


def set_span_error(span: Span, error: Exception) -> None:
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)
