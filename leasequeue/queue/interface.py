"""
The queue contract shared by both engines.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from leasequeue.types.job import Job, JobId, PayloadT
from leasequeue.types.page import BuriedJobs, Paginate

JobCallback = Callable[[Job[PayloadT]], Awaitable[None]]


class Queue(Protocol[PayloadT]):
    """
    Job queue contract.

    Producers ``publish`` jobs; consumers run ``process`` with a callback
    that must end every job it receives with ``delete``, ``republish`` (plus
    ``delete``) or ``bury``. A job left undisposed becomes available again
    once its lease runs out.

    Engines: :class:`leasequeue.queue.polling.PollingQueue` and
    :class:`leasequeue.queue.broker.BrokerQueue`.
    """

    async def publish(
        self,
        name: str,
        data: PayloadT,
        until: datetime | None = None,
        priority: int | None = None,
    ) -> None:
        """Enqueue a new job with ``attempt`` 0."""
        ...

    async def republish(
        self,
        job: Job[PayloadT],
        until: datetime,
        priority: int | None = None,
    ) -> None:
        """Enqueue the next attempt of ``job``; the priority is kept unless given."""
        ...

    async def process(self, callback: JobCallback[PayloadT]) -> None:
        """
        Claim jobs and hand them to ``callback`` until stopped or idle.

        Raises:
            ProcessingStateError: If this instance is already processing.
        """
        ...

    def is_processing(self) -> bool:
        ...

    async def stop_processing(self) -> None:
        """
        Ask the running ``process`` call to return after the current job.

        Raises:
            ProcessingStateError: If this instance is not processing.
        """
        ...

    async def count_processing(self) -> int:
        """Number of jobs (or consumers, for the broker) currently at work."""
        ...

    async def count_processable(self) -> int:
        """Number of jobs that could be claimed right now."""
        ...

    async def delete(self, item: Job[PayloadT] | JobId) -> None:
        """Dispose of a job. Unknown ids are ignored."""
        ...

    async def bury(self, job: Job[PayloadT]) -> None:
        """Park a job until it is reanimated."""
        ...

    async def reanimate(self, job_id: JobId, until: datetime | None = None) -> None:
        """Make a buried job eligible again, from ``until`` or now."""
        ...

    async def count_buried(self) -> int:
        ...

    async def get_buried(self, paginate: Paginate) -> BuriedJobs[PayloadT]:
        """One page of buried jobs, ordered by id, with the total count."""
        ...
