"""
OpenTelemetry tracing setup.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from leasequeue import __version__
from leasequeue.config import Settings, get_settings
from leasequeue.types.job import Job

# Set by setup_tracing; library code falls back to the global provider
_tracer: Tracer | None = None


def setup_tracing(settings: Settings | None = None, *, console: bool = False) -> Tracer:
    """
    Install a tracer provider for a worker process.

    Spans are exported over OTLP only when ``otel_exporter_otlp_endpoint``
    is set; ``console`` additionally prints them, which helps locally.
    """
    global _tracer

    settings = settings or get_settings()

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
                "queue.backend": settings.queue_backend,
            }
        )
    )

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
            )
        )
    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name)
    return _tracer


def instrument_engine(engine: AsyncEngine) -> None:
    """Emit a span for every statement run by ``engine``."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """Tracer from :func:`setup_tracing`, or a no-op one when tracing is off."""
    if _tracer is None:
        return trace.get_tracer(get_settings().otel_service_name)
    return _tracer


@contextmanager
def job_span(span_name: str, job: Job[Any], **attributes: Any) -> Iterator[Span]:
    """Start a span describing ``job``."""
    with get_tracer().start_as_current_span(span_name) as span:
        span.set_attribute("job_id", str(job.id))
        span.set_attribute("job_name", job.name)
        span.set_attribute("attempt", job.attempt)
        for key, value in attributes.items():
            span.set_attribute(key, value)
        yield span
