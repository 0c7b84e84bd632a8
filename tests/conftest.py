"""
Pytest configuration and shared fixtures.
"""

import asyncio
import itertools
import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from leasequeue.broker.channel import Delivery, DeliveryHandler
from leasequeue.config import Settings
from leasequeue.db.connection import create_session_factory, create_tables, get_test_engine
from leasequeue.db.models import Base
from leasequeue.queue.broker import BrokerQueue
from leasequeue.queue.polling import PollingQueue
from leasequeue.types.job import QueueStats
from leasequeue.utils import utcnow

# Point at a server database to run the suite against it; SQLite otherwise
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class InMemoryChannel:
    """
    Message channel double with broker-like delivery.

    Ready messages are delivered highest priority first, then in publish
    order; delayed messages become ready once their delay has passed.
    With ``stop_when_empty`` set, consumption ends as soon as nothing is
    ready instead of waiting for more messages.
    """

    def __init__(self, stop_when_empty: bool = True):
        self.stop_when_empty = stop_when_empty
        self.fail_publish = False

        self.published: list[dict[str, Any]] = []
        self.unacked: dict[int, bytes] = {}
        self.acked: list[int] = []

        self._messages: list[tuple[int, Any, int, bytes]] = []
        self._sequence = itertools.count(1)
        self._tags = itertools.count(1)
        self._stopped: asyncio.Event | None = None
        self._consumers = 0

    async def publish(self, body: bytes, *, priority: int, delay: timedelta | None = None) -> None:
        if self.fail_publish:
            raise ConnectionError("broker unavailable")

        ready_at = utcnow() + (delay or timedelta(0))
        self._messages.append((priority, ready_at, next(self._sequence), body))
        self.published.append({"body": body, "priority": priority, "delay": delay})

    def _ready(self) -> list[tuple[int, Any, int, bytes]]:
        now = utcnow()
        return [message for message in self._messages if message[1] <= now]

    def _next_ready(self) -> tuple[int, Any, int, bytes] | None:
        ready = self._ready()
        if not ready:
            return None
        message = min(ready, key=lambda m: (-m[0], m[2]))
        self._messages.remove(message)
        return message

    async def consume(self, on_delivery: DeliveryHandler) -> None:
        self._stopped = asyncio.Event()
        self._consumers += 1
        try:
            while not self._stopped.is_set():
                message = self._next_ready()
                if message is None:
                    if self.stop_when_empty:
                        break
                    await asyncio.sleep(0.01)
                    continue

                tag = next(self._tags)
                self.unacked[tag] = message[3]
                try:
                    await on_delivery(Delivery(tag, message[3]))
                except Exception:
                    if self.unacked.pop(tag, None) is not None:
                        self._messages.append(message)
                    raise
        finally:
            self._consumers -= 1
            self._stopped = None

    async def cancel(self) -> None:
        if self._stopped is not None:
            self._stopped.set()

    def is_consuming(self) -> bool:
        return self._stopped is not None and not self._stopped.is_set()

    async def ack(self, delivery_tag: int) -> bool:
        if self.unacked.pop(delivery_tag, None) is None:
            return False
        self.acked.append(delivery_tag)
        return True

    async def stats(self) -> QueueStats:
        return QueueStats(message_count=len(self._ready()), consumer_count=self._consumers)

    async def close(self) -> None:
        self._messages.clear()

    def inject(self, body: bytes, priority: int = 0) -> None:
        """Put a raw message on the queue, bypassing the engine."""
        self._messages.append((priority, utcnow(), next(self._sequence), body))


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with fresh queue tables."""
    engine = get_test_engine(database_url)
    await create_tables(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        idle_interval_seconds=0.0,
        worker_max_attempts=3,
        worker_retry_backoff_seconds=0.0,
    )


@pytest.fixture
def polling_queue(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> PollingQueue:
    """Polling engine over the test database."""
    return PollingQueue(session_factory, settings=test_settings)


@pytest.fixture
def memory_channel() -> InMemoryChannel:
    """In-memory broker channel."""
    return InMemoryChannel()


@pytest.fixture
def broker_queue(
    memory_channel: InMemoryChannel,
    session_factory: async_sessionmaker[AsyncSession],
) -> BrokerQueue:
    """Broker engine over the in-memory channel and the test database."""
    return BrokerQueue(memory_channel, session_factory)


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"message": "Hello, World!", "count": 3}


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for a test."""
    async with session_factory() as session:
        yield session
        await session.rollback()
