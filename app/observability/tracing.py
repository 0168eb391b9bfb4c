"""
Distributed Tracing with OpenTelemetry.

Provides end-to-end request tracing across the API and database.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from app.config import settings


def setup_tracing() -> None:
    """
    Configure OpenTelemetry tracing with OTLP export.

    Sets up:
    - TracerProvider with service resource
    - OTLP exporter to collector
    """
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(
        resource=resource,
        sampler=TraceIdRatioBased(settings.trace_sample_rate),
    )

    otlp_exporter = OTLPSpanExporter(
        endpoint=settings.otlp_endpoint,
        insecure=settings.otlp_insecure,
    )
    provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """
    Instrument FastAPI application for automatic tracing.

    Must be called after app creation.
    """
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument an async SQLAlchemy engine for query tracing."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """
    Add attributes to a span, skipping None values.

    Usage:
        add_span_attributes(span, transaction_type="SALE", product_code="427079")
    """
    for key, value in attributes.items():
        if value is not None:
            if isinstance(value, (str, int, float, bool)):
                span.set_attribute(key, value)
            else:
                span.set_attribute(key, str(value))


def set_span_error(span: Span, error: Exception) -> None:
    """Mark span as error and record exception."""
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)


class trace_operation:
    """
    Context manager for creating traced operations.

    Usage:
        with trace_operation("ipn_process", transaction_type="SALE") as span:
            # ... perform operation
            span.set_attribute("outcome", "processed")
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self.tracer = get_tracer("app.operations")
        self._cm: Any = None
        self.span: Span | None = None

    def __enter__(self) -> Span:
        self._cm = self.tracer.start_as_current_span(
            self.operation_name, record_exception=False, set_status_on_exception=False
        )
        self.span = self._cm.__enter__()
        add_span_attributes(self.span, **self.attributes)
        return self.span

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        if self.span is not None and exc_val is not None:
            set_span_error(self.span, exc_val)
        self._cm.__exit__(exc_type, exc_val, exc_tb)
