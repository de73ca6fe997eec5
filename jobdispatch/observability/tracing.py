"""
OpenTelemetry tracing setup.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from jobdispatch import __version__
from jobdispatch.config import get_settings
from jobdispatch.types.envelope import JobEnvelope

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(enable_console_export: bool = False, enable_otlp_export: bool = True) -> Tracer:
    """
    Set up OpenTelemetry tracing.

    Args:
        enable_console_export: If True, also export spans to console.
        enable_otlp_export: If True, export spans to the configured OTLP endpoint.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
            "service.instance.id": settings.worker_id,
        }
    )

    provider = TracerProvider(resource=resource)

    if enable_otlp_export:
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
            )
        )

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(settings.otel_service_name)

    return _tracer


def instrument_fastapi(app: Any) -> None:
    """Instrument the admin FastAPI application with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Falls back to the globally registered provider (a no-op provider unless
    setup_tracing was called) so library code never exports implicitly.
    """
    if _tracer is None:
        return trace.get_tracer(get_settings().otel_service_name)
    return _tracer


@contextmanager
def job_span(name: str, envelope: JobEnvelope, **attributes: Any) -> Iterator[Span]:
    """
    Start a span describing work on one envelope.

    Args:
        name: Span name.
        envelope: The envelope being published or executed.
        **attributes: Extra span attributes; None values are skipped.
    """
    with get_tracer().start_as_current_span(name) as span:
        span.set_attribute("job.id", str(envelope.id))
        span.set_attribute("job.type", envelope.job_type)
        span.set_attribute("job.attempt", envelope.attempt)
        if envelope.periodic_id is not None:
            span.set_attribute("job.periodic_id", envelope.periodic_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, str(value))
        yield span
