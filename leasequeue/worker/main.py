"""
Worker process for executing jobs.

The worker runs the queue's processing loop, executes each job with the
handler registered for its name and then disposes of it: success deletes
the job, a retryable failure republishes it with exponential backoff, and
a job out of attempts (or without a handler) is buried.
"""

import asyncio
import logging
import signal
import time
from datetime import timedelta
from typing import Any

from leasequeue.broker.channel import AmqpChannel
from leasequeue.config import Settings, get_settings
from leasequeue.db import close_db, get_engine, init_db
from leasequeue.observability.logging import job_context, setup_logging
from leasequeue.observability.metrics import setup_metrics
from leasequeue.observability.tracing import instrument_engine, setup_tracing
from leasequeue.queue.factory import create_queue
from leasequeue.queue.interface import Queue
from leasequeue.types.job import Job
from leasequeue.utils import utcnow
from leasequeue.worker.handlers import execute_job, list_handlers

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker driving a :class:`Queue`.

    Features:
    - Works with either queue engine
    - Retry with exponential backoff through republish
    - Burial after the last attempt
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        queue: Queue,
        max_attempts: int | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The queue to consume.
            max_attempts: Deliveries allowed before a failing job is buried.
            retry_backoff_seconds: Base delay before the first retry; doubled
                for every further attempt.
        """
        settings = get_settings()

        self.queue = queue
        self.max_attempts = max_attempts or settings.worker_max_attempts
        self.retry_backoff_seconds = (
            settings.worker_retry_backoff_seconds
            if retry_backoff_seconds is None
            else retry_backoff_seconds
        )

        self._running = False

    async def start(self) -> None:
        """Run until :meth:`stop` is called."""
        logger.info(
            "Worker starting",
            extra={"max_attempts": self.max_attempts, "handlers": list_handlers()},
        )

        self._running = True

        # The polling engine returns after an idle pause; call it again
        while self._running:
            await self.queue.process(self.handle)

        logger.info("Worker stopped")

    async def stop(self) -> None:
        """Stop the worker after the current job."""
        logger.info("Worker stopping")
        self._running = False

        if self.queue.is_processing():
            await self.queue.stop_processing()

    def retry_delay(self, job: Job[Any]) -> timedelta:
        """Backoff before the next attempt of ``job``."""
        return timedelta(seconds=self.retry_backoff_seconds * 2 ** job.attempt)

    async def handle(self, job: Job[Any]) -> None:
        """
        Execute one job and dispose of it.

        Args:
            job: The claimed job.
        """
        start_time = time.monotonic()

        with job_context(job):
            result = await execute_job(job)
            duration = time.monotonic() - start_time

            if result.success:
                await self.queue.delete(job)
                logger.info(
                    "Job completed successfully",
                    extra={"duration": f"{duration:.2f}s"},
                )
                return

            if result.retryable and job.attempt + 1 < self.max_attempts:
                delay = self.retry_delay(job)
                await self.queue.republish(job, until=utcnow() + delay)
                await self.queue.delete(job)
                logger.warning(
                    "Job failed, retry scheduled",
                    extra={"error": result.error, "retry_in": delay.total_seconds()},
                )
                return

            await self.queue.bury(job)
            logger.error(
                "Job failed permanently",
                extra={"error": result.error},
            )


async def run_async(settings: Settings | None = None) -> None:
    """Run the worker asynchronously."""
    settings = settings or get_settings()

    setup_logging(settings)
    setup_tracing(settings)
    setup_metrics(port=settings.prometheus_port)
    session_factory = await init_db(settings)
    instrument_engine(get_engine(settings))

    channel = AmqpChannel(settings) if settings.queue_backend == "broker" else None
    queue = create_queue(session_factory, settings, channel=channel)
    worker = Worker(
        queue,
        max_attempts=settings.worker_max_attempts,
        retry_backoff_seconds=settings.worker_retry_backoff_seconds,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        if channel is not None:
            await channel.close()
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
