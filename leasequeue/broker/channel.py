"""
Message channel used by the broker queue engine.

The engine needs only a handful of broker operations; they are described by
the :class:`MessageChannel` protocol and implemented for RabbitMQ by
:class:`AmqpChannel`. Delayed delivery uses the ``x-delayed-message``
exchange type from the RabbitMQ delayed-message plugin.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

import aio_pika
from aio_pika.abc import (
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustChannel,
    AbstractRobustConnection,
)

from leasequeue.config import Settings, get_settings
from leasequeue.constants import DELAY_HEADER, MAX_PRIORITY
from leasequeue.types.job import QueueStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    """A message handed to this consumer, not yet acknowledged."""

    delivery_tag: int
    body: bytes


DeliveryHandler = Callable[[Delivery], Awaitable[None]]


class MessageChannel(Protocol):
    """Broker operations the push engine relies on."""

    async def publish(
        self,
        body: bytes,
        *,
        priority: int,
        delay: timedelta | None = None,
    ) -> None:
        """Publish a persistent message, optionally held back for ``delay``."""
        ...

    async def consume(self, on_delivery: DeliveryHandler) -> None:
        """
        Deliver messages to ``on_delivery`` until :meth:`cancel` is called.

        An exception raised by ``on_delivery`` returns that delivery to the
        queue, stops consumption and is re-raised here.
        """
        ...

    async def cancel(self) -> None:
        """
        Stop a running :meth:`consume` once in-flight handlers finish.

        Takes effect from the moment :meth:`consume` is entered, including
        while it is still connecting.
        """
        ...

    def is_consuming(self) -> bool:
        ...

    async def ack(self, delivery_tag: int) -> bool:
        """
        Acknowledge a delivery.

        Returns:
            False if the tag is unknown (already acknowledged).
        """
        ...

    async def stats(self) -> QueueStats:
        """Passive queue declaration: ready messages and consumers."""
        ...

    async def close(self) -> None:
        ...


class AmqpChannel:
    """
    RabbitMQ implementation of :class:`MessageChannel` on aio-pika.

    Topology, declared on first use:
    - a durable ``x-delayed-message`` exchange (fanout underneath)
    - a durable queue with ``x-max-priority`` bound to it
    """

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()

        self.url = settings.broker_url
        self.exchange_name = settings.broker_exchange
        self.queue_name = settings.broker_queue
        self.prefetch_count = settings.broker_prefetch_count

        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractRobustChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._queue: AbstractQueue | None = None

        self._pending: dict[int, AbstractIncomingMessage] = {}
        self._handlers: set[asyncio.Task] = set()
        self._stopped: asyncio.Future | None = None

    async def _setup(self) -> None:
        if self._channel is not None:
            return

        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel(publisher_confirms=True)
        self._channel.reopen_callbacks.add(self._forget_deliveries)
        await self._channel.set_qos(prefetch_count=self.prefetch_count)

        self._exchange = await self._channel.declare_exchange(
            self.exchange_name,
            type=aio_pika.ExchangeType.X_DELAYED_MESSAGE,
            durable=True,
            auto_delete=False,
            arguments={"x-delayed-type": aio_pika.ExchangeType.FANOUT.value},
        )
        self._queue = await self._channel.declare_queue(
            self.queue_name,
            durable=True,
            auto_delete=False,
            arguments={"x-max-priority": MAX_PRIORITY},
        )
        await self._queue.bind(self._exchange)

        logger.info(
            "Broker channel ready",
            extra={"exchange": self.exchange_name, "queue": self.queue_name},
        )

    async def publish(
        self,
        body: bytes,
        *,
        priority: int,
        delay: timedelta | None = None,
    ) -> None:
        await self._setup()

        headers = {}
        if delay is not None and delay.total_seconds() > 0:
            headers[DELAY_HEADER] = int(delay.total_seconds() * 1000)

        message = aio_pika.Message(
            body,
            priority=priority,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers=headers or None,
        )
        await self._exchange.publish(message, routing_key="")

    async def consume(self, on_delivery: DeliveryHandler) -> None:
        if self.is_consuming():
            raise RuntimeError("Channel is already consuming")

        # Registered before the first await so a cancel during setup is kept
        stopped = asyncio.get_running_loop().create_future()
        self._stopped = stopped

        async def on_message(message: AbstractIncomingMessage) -> None:
            if stopped.done():
                # Arrived after cancel; the broker delivers it again later
                await message.nack(requeue=True)
                return

            task = asyncio.current_task()
            if task is not None:
                self._handlers.add(task)
            self._pending[message.delivery_tag] = message
            try:
                await on_delivery(Delivery(message.delivery_tag, message.body))
            except Exception as e:
                if self._pending.pop(message.delivery_tag, None) is not None:
                    await message.nack(requeue=True)
                if not stopped.done():
                    stopped.set_exception(e)
            finally:
                if task is not None:
                    self._handlers.discard(task)

        consumer_tag: str | None = None
        try:
            await self._setup()
            if not stopped.done():
                consumer_tag = await self._queue.consume(on_message, no_ack=False)
                logger.info("Consuming", extra={"queue": self.queue_name})
            await stopped
        finally:
            if consumer_tag is not None:
                await self._queue.cancel(consumer_tag)
            if self._handlers:
                await asyncio.gather(*self._handlers, return_exceptions=True)
            self._stopped = None
            logger.info("Stopped consuming", extra={"queue": self.queue_name})

    async def cancel(self) -> None:
        if self._stopped is not None and not self._stopped.done():
            self._stopped.set_result(None)

    def is_consuming(self) -> bool:
        return self._stopped is not None and not self._stopped.done()

    async def ack(self, delivery_tag: int) -> bool:
        message = self._pending.pop(delivery_tag, None)
        if message is None:
            return False
        await message.ack()
        return True

    def _forget_deliveries(self, channel: AbstractRobustChannel) -> None:
        """Drop deliveries of a channel that was reopened."""
        # Tags restart on the new channel and the broker requeues the old ones
        if self._pending:
            logger.warning(
                "Channel reopened, dropping unacknowledged deliveries",
                extra={"count": len(self._pending)},
            )
        self._pending.clear()

    async def stats(self) -> QueueStats:
        await self._setup()

        declared = await self._channel.declare_queue(self.queue_name, passive=True)
        result = declared.declaration_result
        return QueueStats(
            message_count=result.message_count,
            consumer_count=result.consumer_count,
        )

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None
        self._queue = None
        self._pending.clear()
