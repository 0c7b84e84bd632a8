"""
Logging, metrics and tracing for queue engines and workers.
"""

from leasequeue.observability.logging import job_context, setup_logging
from leasequeue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from leasequeue.observability.tracing import (
    get_tracer,
    instrument_engine,
    job_span,
    setup_tracing,
)

__all__ = [
    "setup_logging",
    "job_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "instrument_engine",
    "get_tracer",
    "job_span",
]
