"""
Broker queue engine.

Live jobs are broker messages: the broker claims a job by delivering it to a
single consumer, and an unacknowledged delivery is redelivered when that
consumer goes away, which stands in for the lease. Priority and due time map
onto the broker's message priority and delayed delivery.

The broker cannot park a message, so buried jobs move to the
``queue_job_buried`` table and are published again on reanimation.
Identifiers are tagged: :class:`LiveDelivery` for messages held by this
consumer, :class:`ArchivedRow` for archive rows.
"""

import logging
import time
from datetime import datetime
from typing import Any, Generic

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasequeue.broker.channel import Delivery, MessageChannel
from leasequeue.broker.messages import MessageEnvelope
from leasequeue.codec import PayloadCodec, default_codec
from leasequeue.constants import DEFAULT_PRIORITY, SPAN_PROCESS_JOB, SPAN_REANIMATE_JOB
from leasequeue.db.models import BuriedJob
from leasequeue.db.repository import BuriedJobRepository
from leasequeue.exceptions import (
    PayloadDecodeError,
    ProcessingStateError,
    UnsupportedIdentifierError,
)
from leasequeue.observability.metrics import get_metrics
from leasequeue.observability.tracing import get_tracer, job_span
from leasequeue.queue.interface import JobCallback
from leasequeue.types.job import (
    ArchivedRow,
    Job,
    JobId,
    LiveDelivery,
    PayloadT,
    validate_name,
    validate_priority,
)
from leasequeue.types.page import BuriedJobs, Paginate
from leasequeue.utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

ENGINE = "broker"


class BrokerQueue(Generic[PayloadT]):
    """
    Queue engine backed by a message broker and a buried-job archive table.
    """

    def __init__(
        self,
        channel: MessageChannel,
        session_factory: async_sessionmaker[AsyncSession],
        codec: PayloadCodec[PayloadT] | None = None,
    ):
        """
        Initialize the engine.

        Args:
            channel: Broker channel for live jobs.
            session_factory: Factory for sessions on the archive database.
            codec: Payload codec. Defaults to JSON ``dict`` payloads.
        """
        self._channel = channel
        self._sessions = session_factory
        self._codec = codec or default_codec()

        self._processing = False
        self._metrics = get_metrics()

    async def publish(
        self,
        name: str,
        data: PayloadT,
        until: datetime | None = None,
        priority: int | None = None,
    ) -> None:
        await self._put(
            name=name,
            encoded=self._codec.encode(data),
            attempt=0,
            until=until,
            priority=DEFAULT_PRIORITY if priority is None else priority,
        )

    async def republish(
        self,
        job: Job[PayloadT],
        until: datetime,
        priority: int | None = None,
    ) -> None:
        await self._put(
            name=job.name,
            encoded=self._codec.encode(job.data),
            attempt=job.attempt + 1,
            until=until,
            priority=job.priority if priority is None else priority,
        )

    async def _put(
        self,
        name: str,
        encoded: str,
        attempt: int,
        until: datetime | None,
        priority: int,
    ) -> None:
        envelope = MessageEnvelope(
            name=validate_name(name),
            data=encoded,
            attempt=attempt,
            priority=validate_priority(priority),
        )

        delay = None
        until = to_naive_utc(until)
        if until is not None:
            now = utcnow()
            if until > now:
                delay = until - now

        await self._channel.publish(envelope.to_body(), priority=envelope.priority, delay=delay)

        self._metrics.record_published(ENGINE, name)
        logger.info(
            "Published job",
            extra={
                "job_name": name,
                "attempt": attempt,
                "priority": envelope.priority,
                "delay_seconds": delay.total_seconds() if delay else 0,
            },
        )

    async def process(self, callback: JobCallback[PayloadT]) -> None:
        """
        Consume jobs from the broker until ``stop_processing`` is called.

        Raises:
            ProcessingStateError: If this instance is already processing.
            PayloadDecodeError: If a delivered message is not a valid job.
        """
        if self._processing:
            raise ProcessingStateError("Cannot process when already processing")

        self._processing = True

        async def on_delivery(delivery: Delivery) -> None:
            job = self._decode_delivery(delivery)
            self._metrics.record_claimed(ENGINE)
            await self._run_callback(callback, job)

        try:
            await self._channel.consume(on_delivery)
        finally:
            self._processing = False

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
                    extra={"job_id": str(job.id), "job_name": job.name, "attempt": job.attempt},
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
        await self._channel.cancel()

    async def count_processing(self) -> int:
        """Number of consumers attached to the broker queue."""
        stats = await self._channel.stats()
        return stats.consumer_count

    async def count_processable(self) -> int:
        """Number of messages ready for delivery."""
        stats = await self._channel.stats()
        self._metrics.update_queue_depth(ENGINE, stats.message_count)
        return stats.message_count

    async def delete(self, item: Job[PayloadT] | JobId) -> None:
        job_id = item.id if isinstance(item, Job) else item

        match job_id:
            case LiveDelivery(delivery_tag=tag):
                if not await self._channel.ack(tag):
                    logger.debug("Ack of unknown delivery ignored", extra={"job_id": str(job_id)})
            case ArchivedRow(row_id=row_id):
                async with self._sessions() as session, session.begin():
                    deleted = await BuriedJobRepository(session).delete(row_id)
                if not deleted:
                    logger.debug("Delete of unknown archive row ignored", extra={"job_id": str(job_id)})
            case _:
                raise UnsupportedIdentifierError(
                    f"The broker engine addresses jobs by LiveDelivery or ArchivedRow, got {job_id!r}"
                )

    async def bury(self, job: Job[PayloadT]) -> None:
        match job.id:
            case LiveDelivery(delivery_tag=tag):
                # The archive row commits only once the delivery is acked, so
                # a delivery that is already gone is never archived twice
                async with self._sessions() as session:
                    row_id = await BuriedJobRepository(session).add(
                        name=job.name,
                        data=self._codec.encode(job.data),
                        attempt=job.attempt,
                        priority=job.priority,
                    )
                    if not await self._channel.ack(tag):
                        await session.rollback()
                        logger.debug("Bury of unknown delivery ignored", extra={"job_id": str(job.id)})
                        return
                    await session.commit()

                self._metrics.record_buried(ENGINE)
                logger.warning(
                    "Buried job",
                    extra={
                        "job_id": str(job.id),
                        "archive_id": row_id,
                        "job_name": job.name,
                        "attempt": job.attempt,
                    },
                )
            case ArchivedRow():
                logger.debug("Job is already buried", extra={"job_id": str(job.id)})
            case _:
                raise UnsupportedIdentifierError(
                    f"The broker engine addresses jobs by LiveDelivery or ArchivedRow, got {job.id!r}"
                )

    async def reanimate(self, job_id: JobId, until: datetime | None = None) -> None:
        """
        Publish a buried job again.

        The archive row is deleted and the message published inside one
        transaction that commits only after the broker accepted the message:
        a failed publish leaves the row in place, and two concurrent calls
        cannot both take the row.
        """
        if not isinstance(job_id, ArchivedRow):
            raise UnsupportedIdentifierError(
                f"Only archived jobs can be reanimated, got {job_id!r}"
            )

        with get_tracer().start_as_current_span(SPAN_REANIMATE_JOB) as span:
            span.set_attribute("job_id", str(job_id))

            async with self._sessions() as session, session.begin():
                row = await BuriedJobRepository(session).take(job_id.row_id)
                if row is None:
                    logger.debug("Reanimate of unknown archive row ignored", extra={"job_id": str(job_id)})
                    return

                job = self._hydrate_archived(row, operation="reanimate")
                await self.republish(job, until=until or utcnow())

        self._metrics.record_reanimated(ENGINE)
        logger.info("Reanimated job", extra={"job_id": str(job_id), "job_name": job.name})

    async def count_buried(self) -> int:
        async with self._sessions() as session:
            return await BuriedJobRepository(session).count()

    async def get_buried(self, paginate: Paginate) -> BuriedJobs[PayloadT]:
        async with self._sessions() as session:
            rows, total = await BuriedJobRepository(session).list_jobs(
                limit=paginate.page_size,
                offset=paginate.offset,
            )

        return BuriedJobs(
            jobs=[self._hydrate_archived(row, operation="get_buried") for row in rows],
            total=total,
            page=paginate.page,
            page_size=paginate.page_size,
        )

    def _decode_delivery(self, delivery: Delivery) -> Job[PayloadT]:
        job_id = LiveDelivery(delivery.delivery_tag)

        try:
            envelope = MessageEnvelope.from_body(delivery.body)
        except ValidationError as e:
            logger.error("Delivered message is not a job", extra={"job_id": str(job_id)})
            raise PayloadDecodeError(
                f"invalid message envelope: {e.error_count()} error(s)",
                operation="process",
                job_id=job_id,
            ) from e

        return Job(
            id=job_id,
            name=envelope.name,
            data=self._decode(envelope.data, operation="process", job_id=job_id),
            attempt=envelope.attempt,
            priority=envelope.priority,
        )

    def _hydrate_archived(self, row: BuriedJob | Any, operation: str) -> Job[PayloadT]:
        job_id = ArchivedRow(row.id)
        return Job(
            id=job_id,
            name=row.name,
            data=self._decode(row.data, operation=operation, job_id=job_id),
            attempt=row.attempt,
            priority=row.priority,
        )

    def _decode(self, raw: str | bytes, operation: str, job_id: JobId) -> PayloadT:
        try:
            return self._codec.decode(raw)
        except PayloadDecodeError as e:
            logger.error(
                "Payload could not be decoded",
                extra={"job_id": str(job_id), "operation": operation},
            )
            raise PayloadDecodeError(str(e), operation=operation, job_id=job_id) from e
