"""
Queue engine selection.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasequeue.broker.channel import AmqpChannel, MessageChannel
from leasequeue.codec import PayloadCodec
from leasequeue.config import Settings, get_settings
from leasequeue.queue.broker import BrokerQueue
from leasequeue.queue.interface import Queue
from leasequeue.queue.polling import PollingQueue

logger = logging.getLogger(__name__)


def create_queue(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    *,
    codec: PayloadCodec | None = None,
    channel: MessageChannel | None = None,
) -> Queue:
    """
    Build the queue engine named by ``settings.queue_backend``.

    Args:
        session_factory: Sessions for the job table (``database``) or the
            buried-job archive (``broker``).
        settings: Settings to read; defaults to the cached settings.
        codec: Payload codec shared by producers and consumers.
        channel: Broker channel; an :class:`AmqpChannel` is created from
            settings when omitted.

    Raises:
        ValueError: If the backend name is unknown.
    """
    settings = settings or get_settings()

    match settings.queue_backend:
        case "database":
            queue: Queue = PollingQueue(session_factory, codec=codec, settings=settings)
        case "broker":
            queue = BrokerQueue(
                channel or AmqpChannel(settings),
                session_factory,
                codec=codec,
            )
        case backend:
            raise ValueError(f"Unknown queue backend: {backend}")

    logger.info("Queue engine created", extra={"engine": settings.queue_backend})
    return queue
