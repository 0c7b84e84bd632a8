"""
Unit tests for the RabbitMQ channel with aio-pika replaced by fakes.
"""

import asyncio
from datetime import timedelta
from types import SimpleNamespace

import aio_pika
import pytest

from leasequeue.broker.channel import AmqpChannel, Delivery
from leasequeue.config import Settings
from leasequeue.constants import DELAY_HEADER
from leasequeue.queue.broker import BrokerQueue


class FakeMessage:
    """Incoming message recording how it was settled."""

    def __init__(self, delivery_tag: int, body: bytes = b"{}"):
        self.delivery_tag = delivery_tag
        self.body = body
        self.acked = False
        self.requeued: bool | None = None

    async def ack(self) -> None:
        self.acked = True

    async def nack(self, requeue: bool = True) -> None:
        self.requeued = requeue


class FakeQueue:
    def __init__(self):
        self.callback = None
        self.consume_calls = 0
        self.cancelled: list[str] = []
        self.declaration_result = SimpleNamespace(message_count=3, consumer_count=1)

    async def bind(self, exchange) -> None:
        pass

    async def consume(self, callback, no_ack: bool = False) -> str:
        self.consume_calls += 1
        self.callback = callback
        return f"ctag-{self.consume_calls}"

    async def cancel(self, consumer_tag: str) -> None:
        self.cancelled.append(consumer_tag)
        self.callback = None

    async def deliver(self, message: FakeMessage) -> None:
        """Run the consumer callback in its own task, as aio-pika does."""
        await asyncio.create_task(self.callback(message))


class FakeBroker:
    """
    Stands in for the robust connection, its channel and the exchange.

    ``release`` holds ``connect_robust`` back until it is set, which keeps
    the channel in its connecting phase.
    """

    def __init__(self):
        self.queue = FakeQueue()
        self.published: list[aio_pika.Message] = []
        self.reopen_callbacks: set = set()
        self.connecting = asyncio.Event()
        self.release = asyncio.Event()
        self.release.set()
        self.closed = False

    async def connect_robust(self, url: str) -> "FakeBroker":
        self.connecting.set()
        await self.release.wait()
        return self

    async def channel(self, publisher_confirms: bool = True) -> "FakeBroker":
        return self

    async def set_qos(self, prefetch_count: int) -> None:
        pass

    async def declare_exchange(self, name: str, **kwargs) -> "FakeBroker":
        return self

    async def declare_queue(self, name: str, **kwargs) -> FakeQueue:
        return self.queue

    async def publish(self, message: aio_pika.Message, routing_key: str) -> None:
        self.published.append(message)

    async def close(self) -> None:
        self.closed = True

    def reopen(self) -> None:
        for callback in list(self.reopen_callbacks):
            callback(self)


@pytest.fixture
def broker(monkeypatch: pytest.MonkeyPatch) -> FakeBroker:
    broker = FakeBroker()
    monkeypatch.setattr(aio_pika, "connect_robust", broker.connect_robust)
    return broker


@pytest.fixture
def channel(test_settings: Settings) -> AmqpChannel:
    return AmqpChannel(test_settings)


async def start_consuming(channel: AmqpChannel, queue: FakeQueue, on_delivery) -> asyncio.Task:
    """Start ``consume`` in a task and wait for the consumer to register."""
    task = asyncio.create_task(channel.consume(on_delivery))
    for _ in range(100):
        if queue.callback is not None:
            break
        await asyncio.sleep(0)
    assert queue.callback is not None
    return task


async def ignore(delivery: Delivery) -> None:
    pass


class TestConsume:
    """Tests for delivery, acknowledgement and cancellation."""

    async def test_delivery_and_ack(self, channel: AmqpChannel, broker: FakeBroker):
        received: list[Delivery] = []

        async def on_delivery(delivery: Delivery) -> None:
            received.append(delivery)

        task = await start_consuming(channel, broker.queue, on_delivery)
        message = FakeMessage(1, b"body")
        await broker.queue.deliver(message)

        assert received == [Delivery(1, b"body")]
        assert channel.is_consuming() is True
        assert await channel.ack(1) is True
        assert message.acked is True
        assert await channel.ack(1) is False

        await channel.cancel()
        await asyncio.wait_for(task, timeout=1)

        assert broker.queue.cancelled == ["ctag-1"]
        assert channel.is_consuming() is False

    async def test_ack_unknown_tag(self, channel: AmqpChannel):
        assert await channel.ack(42) is False

    async def test_handler_error_requeues_delivery(self, channel: AmqpChannel, broker: FakeBroker):
        """Test a failing handler returns its message and ends consumption."""

        async def on_delivery(delivery: Delivery) -> None:
            raise RuntimeError("handler failed")

        task = await start_consuming(channel, broker.queue, on_delivery)
        message = FakeMessage(1)
        await broker.queue.deliver(message)

        with pytest.raises(RuntimeError, match="handler failed"):
            await asyncio.wait_for(task, timeout=1)

        assert message.requeued is True
        assert message.acked is False
        assert await channel.ack(1) is False
        assert broker.queue.cancelled == ["ctag-1"]
        assert channel.is_consuming() is False

    async def test_handler_error_after_ack(self, channel: AmqpChannel, broker: FakeBroker):
        """Test a delivery acked before the handler failed is not returned."""

        async def on_delivery(delivery: Delivery) -> None:
            await channel.ack(delivery.delivery_tag)
            raise RuntimeError("handler failed")

        task = await start_consuming(channel, broker.queue, on_delivery)
        message = FakeMessage(1)
        await broker.queue.deliver(message)

        with pytest.raises(RuntimeError):
            await asyncio.wait_for(task, timeout=1)

        assert message.acked is True
        assert message.requeued is None

    async def test_message_after_cancel_is_requeued(self, channel: AmqpChannel, broker: FakeBroker):
        received: list[Delivery] = []

        async def on_delivery(delivery: Delivery) -> None:
            received.append(delivery)

        task = await start_consuming(channel, broker.queue, on_delivery)
        callback = broker.queue.callback
        await channel.cancel()
        await asyncio.wait_for(task, timeout=1)

        message = FakeMessage(7)
        await callback(message)

        assert received == []
        assert message.requeued is True

    async def test_consume_twice_raises(self, channel: AmqpChannel, broker: FakeBroker):
        task = await start_consuming(channel, broker.queue, ignore)

        with pytest.raises(RuntimeError, match="already consuming"):
            await channel.consume(ignore)

        await channel.cancel()
        await asyncio.wait_for(task, timeout=1)


class TestCancelWhileConnecting:
    """Tests for stopping before the consumer is registered."""

    async def test_cancel_during_setup(self, channel: AmqpChannel, broker: FakeBroker):
        """Test a cancel that arrives while connecting ends consume."""
        broker.release.clear()

        task = asyncio.create_task(channel.consume(ignore))
        await broker.connecting.wait()
        assert channel.is_consuming() is True

        await channel.cancel()
        broker.release.set()
        await asyncio.wait_for(task, timeout=1)

        assert broker.queue.consume_calls == 0
        assert channel.is_consuming() is False

    async def test_stop_processing_during_setup(
        self,
        channel: AmqpChannel,
        broker: FakeBroker,
        session_factory,
    ):
        """Test stop_processing right after process starts is not lost."""
        queue = BrokerQueue(channel, session_factory)
        broker.release.clear()

        async def callback(job) -> None:
            pytest.fail("callback must not run")

        task = asyncio.create_task(queue.process(callback))
        await broker.connecting.wait()
        assert queue.is_processing() is True

        await queue.stop_processing()
        broker.release.set()
        await asyncio.wait_for(task, timeout=1)

        assert broker.queue.consume_calls == 0
        assert queue.is_processing() is False


class TestReopen:
    """Tests for channel recovery."""

    async def test_reopen_forgets_deliveries(self, channel: AmqpChannel, broker: FakeBroker):
        """Test tags from before a reopen are no longer acknowledged."""
        task = await start_consuming(channel, broker.queue, ignore)
        message = FakeMessage(1)
        await broker.queue.deliver(message)

        broker.reopen()

        assert await channel.ack(1) is False
        assert message.acked is False

        await channel.cancel()
        await asyncio.wait_for(task, timeout=1)


class TestPublishAndStats:
    async def test_publish_with_delay(self, channel: AmqpChannel, broker: FakeBroker):
        await channel.publish(b"body", priority=4, delay=timedelta(seconds=1.5))

        [message] = broker.published
        assert message.body == b"body"
        assert message.priority == 4
        assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
        assert message.headers[DELAY_HEADER] == 1500

    async def test_publish_without_delay(self, channel: AmqpChannel, broker: FakeBroker):
        await channel.publish(b"body", priority=0)

        [message] = broker.published
        assert DELAY_HEADER not in (message.headers or {})

    async def test_stats(self, channel: AmqpChannel, broker: FakeBroker):
        stats = await channel.stats()

        assert stats.message_count == 3
        assert stats.consumer_count == 1

    async def test_close(self, channel: AmqpChannel, broker: FakeBroker):
        await channel.stats()

        await channel.close()

        assert broker.closed is True
