"""
Polling queue engine.

Jobs live in a relational table. Consumers poll it: each claim reads the
best-ranked processable row and then reserves it with a conditional update
guarded by the same eligibility predicate, so concurrent consumers never
hold the same job. Lease expiry needs no reaper; an expired reservation is
simply processable again at the next selection.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Generic

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasequeue.codec import PayloadCodec, default_codec
from leasequeue.config import Settings, get_settings
from leasequeue.constants import DEFAULT_PRIORITY, SPAN_CLAIM_JOB, SPAN_PROCESS_JOB
from leasequeue.db.models import QueueJob
from leasequeue.db.repository import QueueJobRepository
from leasequeue.exceptions import (
    PayloadDecodeError,
    ProcessingStateError,
    UnsupportedIdentifierError,
)
from leasequeue.observability.metrics import get_metrics
from leasequeue.observability.tracing import get_tracer, job_span
from leasequeue.queue.interface import JobCallback
from leasequeue.types.job import (
    Job,
    JobId,
    PayloadT,
    validate_name,
    validate_priority,
)
from leasequeue.types.page import BuriedJobs, Paginate
from leasequeue.utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

ENGINE = "database"


class PollingQueue(Generic[PayloadT]):
    """
    Queue engine backed by the ``queue_job`` table.

    One instance runs at most one processing loop at a time; cross-process
    exclusion comes from the claim update alone.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        codec: PayloadCodec[PayloadT] | None = None,
        settings: Settings | None = None,
        *,
        lease_duration_seconds: int | None = None,
        idle_interval_seconds: float | None = None,
    ):
        """
        Initialize the engine.

        Args:
            session_factory: Factory for database sessions.
            codec: Payload codec. Defaults to JSON ``dict`` payloads.
            settings: Settings to read defaults from.
            lease_duration_seconds: Lease granted by each claim.
            idle_interval_seconds: Pause before ``process`` returns when no
                job was available.
        """
        settings = settings or get_settings()

        self._sessions = session_factory
        self._codec = codec or default_codec()
        self.lease_duration_seconds = (
            lease_duration_seconds or settings.lease_duration_seconds
        )
        self.idle_interval = (
            settings.idle_interval_seconds
            if idle_interval_seconds is None
            else idle_interval_seconds
        )
        self.claim_retry_limit = settings.claim_retry_limit

        self._processing = False
        self._metrics = get_metrics()

    @asynccontextmanager
    async def _repository(self) -> AsyncIterator[QueueJobRepository]:
        """One repository per transaction; commits on success."""
        async with self._sessions() as session:
            try:
                yield QueueJobRepository(session, self.lease_duration_seconds)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def publish(
        self,
        name: str,
        data: PayloadT,
        until: datetime | None = None,
        priority: int | None = None,
    ) -> None:
        await self._insert(
            name=name,
            data=data,
            until=until,
            priority=DEFAULT_PRIORITY if priority is None else priority,
            attempt=0,
        )

    async def republish(
        self,
        job: Job[PayloadT],
        until: datetime,
        priority: int | None = None,
    ) -> None:
        await self._insert(
            name=job.name,
            data=job.data,
            until=until,
            priority=job.priority if priority is None else priority,
            attempt=job.attempt + 1,
        )

    async def _insert(
        self,
        name: str,
        data: PayloadT,
        until: datetime | None,
        priority: int,
        attempt: int,
    ) -> int:
        validate_name(name)
        priority = validate_priority(priority)
        encoded = self._codec.encode(data)

        async with self._repository() as repo:
            job_id = await repo.insert_job(
                name=name,
                data=encoded,
                priority=priority,
                until=to_naive_utc(until),
                attempt=attempt,
            )

        self._metrics.record_published(ENGINE, name)
        logger.info(
            "Published job",
            extra={
                "job_id": job_id,
                "job_name": name,
                "attempt": attempt,
                "priority": priority,
            },
        )
        return job_id

    async def try_claim(self) -> Job[PayloadT] | None:
        """
        Claim the best-ranked processable job.

        When another consumer wins the race for the selected row, selection
        runs again (up to ``claim_retry_limit`` times) instead of failing.

        Returns:
            The claimed job, or None if nothing is processable.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("engine", ENGINE)

            for _ in range(self.claim_retry_limit):
                async with self._repository() as repo:
                    now = utcnow()
                    row = await repo.find_processable(now)
                    if row is None:
                        return None
                    claimed = await repo.mark_reserved(row.id, now)

                if claimed:
                    self._metrics.record_claimed(ENGINE)
                    span.set_attribute("job_id", row.id)
                    return self._hydrate(row, operation="claim")

                self._metrics.record_claim_conflict(ENGINE)
                logger.debug("Lost claim race", extra={"job_id": row.id})

            return None

    async def process(self, callback: JobCallback[PayloadT]) -> None:
        """
        Run the processing loop.

        Claims jobs one at a time and awaits ``callback`` for each. Returns
        after ``stop_processing`` is observed between jobs, or after one idle
        pause when no job is available; call again for continuous work.

        Raises:
            ProcessingStateError: If this instance is already processing.
        """
        if self._processing:
            raise ProcessingStateError("Cannot process when already processing")

        self._processing = True
        logger.debug("Processing started", extra={"engine": ENGINE})

        try:
            while self._processing:
                job = await self.try_claim()

                if job is None:
                    if self._processing:
                        await asyncio.sleep(self.idle_interval)
                    break

                await self._run_callback(callback, job)
        finally:
            self._processing = False
            logger.debug("Processing stopped", extra={"engine": ENGINE})

    async def _run_callback(self, callback: JobCallback[PayloadT], job: Job[PayloadT]) -> None:
        start_time = time.monotonic()
        outcome = "error"

        with job_span(SPAN_PROCESS_JOB, job, engine=ENGINE):
            try:
                await callback(job)
                outcome = "ok"
            except Exception:
                logger.exception(
                    "Job callback raised",
                    extra={"job_id": job.id, "job_name": job.name, "attempt": job.attempt},
                )
                raise
            finally:
                self._metrics.record_job_completed(
                    name=job.name,
                    outcome=outcome,
                    duration_seconds=time.monotonic() - start_time,
                )

    def is_processing(self) -> bool:
        return self._processing

    async def stop_processing(self) -> None:
        if not self._processing:
            raise ProcessingStateError("Cannot stop processing when not processing")

        self._processing = False

    async def count_processing(self) -> int:
        async with self._repository() as repo:
            return await repo.count_reserved(utcnow())

    async def count_processable(self) -> int:
        async with self._repository() as repo:
            count = await repo.count_processable(utcnow())

        self._metrics.update_queue_depth(ENGINE, count)
        return count

    async def delete(self, item: Job[PayloadT] | JobId) -> None:
        job_id = self._resolve_id(item)

        async with self._repository() as repo:
            deleted = await repo.delete_job(job_id)

        if not deleted:
            logger.debug("Delete of unknown job ignored", extra={"job_id": job_id})

    async def bury(self, job: Job[PayloadT]) -> None:
        job_id = self._resolve_id(job)

        async with self._repository() as repo:
            buried = await repo.bury_job(job_id)

        if buried:
            self._metrics.record_buried(ENGINE)
            logger.warning(
                "Buried job",
                extra={"job_id": job_id, "job_name": job.name, "attempt": job.attempt},
            )
        else:
            logger.debug("Bury of unknown job ignored", extra={"job_id": job_id})

    async def reanimate(self, job_id: JobId, until: datetime | None = None) -> None:
        row_id = self._resolve_id(job_id)

        async with self._repository() as repo:
            reanimated = await repo.reanimate_job(row_id, to_naive_utc(until) or utcnow())

        if reanimated:
            self._metrics.record_reanimated(ENGINE)
            logger.info("Reanimated job", extra={"job_id": row_id})
        else:
            logger.debug("Reanimate of unknown job ignored", extra={"job_id": row_id})

    async def count_buried(self) -> int:
        async with self._repository() as repo:
            return await repo.count_buried()

    async def get_buried(self, paginate: Paginate) -> BuriedJobs[PayloadT]:
        async with self._repository() as repo:
            rows, total = await repo.list_buried(
                limit=paginate.page_size,
                offset=paginate.offset,
            )

        return BuriedJobs(
            jobs=[self._hydrate(row, operation="get_buried") for row in rows],
            total=total,
            page=paginate.page,
            page_size=paginate.page_size,
        )

    def _hydrate(self, row: QueueJob, operation: str) -> Job[PayloadT]:
        try:
            data = self._codec.decode(row.data)
        except PayloadDecodeError as e:
            logger.error(
                "Stored payload could not be decoded",
                extra={"job_id": row.id, "operation": operation},
            )
            raise PayloadDecodeError(str(e), operation=operation, job_id=row.id) from e

        return Job(
            id=row.id,
            name=row.name,
            data=data,
            attempt=row.attempt,
            priority=row.priority,
            until=row.until,
        )

    @staticmethod
    def _resolve_id(item: Any) -> int:
        match item:
            case Job(id=job_id):
                item = job_id
        if isinstance(item, bool) or not isinstance(item, int):
            raise UnsupportedIdentifierError(
                f"The database engine addresses jobs by integer id, got {item!r}"
            )
        return item
