"""
Handlers run by the worker, looked up by job name.

A job can be delivered more than once (a lease may run out mid-run, a
broker connection may drop before the ack), so handlers have to tolerate
repeats.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from leasequeue.types.job import Job, JobResult

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job[Any]], Awaitable[JobResult]]


@dataclass(frozen=True)
class RegisteredHandler:
    handler: JobHandler
    timeout_seconds: float | None = None


_registry: dict[str, RegisteredHandler] = {}


def register_handler(
    name: str,
    timeout_seconds: float | None = None,
) -> Callable[[JobHandler], JobHandler]:
    """
    Register the decorated coroutine as the handler for ``name``.

    Args:
        name: Job name routed to this handler.
        timeout_seconds: Fail the run (retryably) when the handler takes
            longer than this.

    Example:
        @register_handler("send_email", timeout_seconds=30)
        async def send_email(job: Job) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        if name in _registry:
            logger.warning("Replacing job handler", extra={"job_name": name})
        _registry[name] = RegisteredHandler(handler, timeout_seconds)
        return handler
    return decorator


def list_handlers() -> list[str]:
    return sorted(_registry)


@register_handler("echo")
async def handle_echo(job: Job[Any]) -> JobResult:
    """Return the payload unchanged."""
    return JobResult(success=True, output={"echo": job.data})


@register_handler("sleep")
async def handle_sleep(job: Job[Any]) -> JobResult:
    """Sleep for ``data["duration_seconds"]`` (default 1)."""
    duration = job.data.get("duration_seconds", 1)
    await asyncio.sleep(duration)
    return JobResult(success=True, output={"slept_for": duration})


@register_handler("failing_job")
async def handle_failing_job(job: Job[Any]) -> JobResult:
    """Always fail; exercises retry and burial."""
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {job.attempt}",
    )


async def execute_job(job: Job[Any]) -> JobResult:
    """
    Run the handler registered for ``job.name``.

    Never raises for handler problems: a missing handler is a
    non-retryable failure, while an exception or timeout inside the
    handler is a retryable one. ``duration_ms`` is always filled in.
    """
    registered = _registry.get(job.name)
    if registered is None:
        logger.error("No handler for job", extra={"job_name": job.name})
        return JobResult(
            success=False,
            error=f"No handler registered for job: {job.name}",
            retryable=False,
        )

    start_time = time.monotonic()
    try:
        result = await asyncio.wait_for(
            registered.handler(job),
            timeout=registered.timeout_seconds,
        )
    except TimeoutError:
        result = JobResult(
            success=False,
            error=f"Handler timed out after {registered.timeout_seconds}s",
        )
    except Exception as e:
        logger.exception("Handler raised exception", extra={"job_name": job.name})
        result = JobResult(success=False, error=f"Handler exception: {e}")

    if result.duration_ms is None:
        result.duration_ms = (time.monotonic() - start_time) * 1000
    return result
