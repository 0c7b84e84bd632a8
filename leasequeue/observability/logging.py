"""
Structured logging setup using structlog.

Library modules log through ``logging.getLogger(__name__)`` with ``extra=``
fields; :func:`setup_logging` routes those records through structlog so
they come out as JSON (or colored console lines) carrying the job context
bound by :func:`job_context` and the active trace ids.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from leasequeue.config import Settings, get_settings
from leasequeue.types.job import ArchivedRow, Job, LiveDelivery

# Chatty below WARNING: per-statement SQL and per-frame AMQP logs
NOISY_LOGGERS = ("sqlalchemy.engine", "aio_pika", "aiormq")


def add_trace_ids(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current span's trace and span id, if one is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def render_job_ids(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render tagged broker identifiers as their string form."""
    for key, value in event_dict.items():
        if isinstance(value, (LiveDelivery, ArchivedRow)):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure the root logger for a worker process.

    Args:
        settings: Source of ``log_level`` and ``log_format`` (``json`` or
            ``console``).
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_ids,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        render_job_ids,
    ]

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def job_context(job: Job[Any]) -> Iterator[None]:
    """
    Bind the job's identity to every log line emitted inside the block.

    Example:
        with job_context(job):
            logger.info("Job completed")  # carries job_id, job_name, attempt
    """
    with structlog.contextvars.bound_contextvars(
        job_id=str(job.id),
        job_name=job.name,
        attempt=job.attempt,
    ):
        yield
