"""
Job repositories for database operations.
Implements the claim protocol and the buried-job archive queries.
"""

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from leasequeue.config import get_settings
from leasequeue.constants import JobState
from leasequeue.db.models import BuriedJob, QueueJob
from leasequeue.ordering import processing_order
from leasequeue.types.job import Lease

logger = logging.getLogger(__name__)


def processable_filter(now: datetime) -> ColumnElement[bool]:
    """
    Eligibility predicate shared by selection, claim and counting.

    A job is processable when it is ready and due, or reserved under a
    lease that has run out.
    """
    return or_(
        and_(
            QueueJob.state == JobState.READY,
            or_(QueueJob.until.is_(None), QueueJob.until <= now),
        ),
        and_(
            QueueJob.state == JobState.RESERVED,
            QueueJob.reserved_until < now,
        ),
    )


class QueueJobRepository:
    """
    Repository for the polling engine's job table.

    Implements atomic operations for:
    - Job insertion
    - Claiming via a guarded conditional update
    - Burial and reanimation
    - Counting and paginating buried jobs
    """

    def __init__(self, session: AsyncSession, lease_duration_seconds: int | None = None):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            lease_duration_seconds: Lease granted by a claim. Defaults to the
                configured lease duration.
        """
        self._session = session
        self._lease_seconds = lease_duration_seconds or get_settings().lease_duration_seconds

    async def insert_job(
        self,
        name: str,
        data: str,
        priority: int,
        until: datetime | None = None,
        attempt: int = 0,
    ) -> int:
        """
        Insert a ready job.

        Returns:
            The generated row id.
        """
        stmt = (
            insert(QueueJob)
            .values(
                state=JobState.READY,
                name=name,
                data=data,
                priority=priority,
                until=until,
                attempt=attempt,
            )
            .returning(QueueJob.id)
        )
        result = await self._session.execute(stmt)
        job_id = result.scalar_one()

        logger.debug(
            "Inserted job",
            extra={"job_id": job_id, "job_name": name, "attempt": attempt},
        )
        return job_id

    async def find_processable(self, now: datetime) -> QueueJob | None:
        """
        Read the best-ranked processable job without claiming it.

        Args:
            now: The instant eligibility is evaluated at.
        """
        stmt = (
            select(QueueJob)
            .where(processable_filter(now))
            .order_by(*processing_order(QueueJob))
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_reserved(self, job_id: int, now: datetime) -> bool:
        """
        Claim a job found by :meth:`find_processable`.

        The update is scoped to the id and guarded by the same eligibility
        predicate, so when several consumers race for one row exactly one
        update matches. This is the critical path for job distribution.

        Returns:
            True if this caller now holds the lease.
        """
        lease = Lease.grant(self._lease_seconds, now)
        stmt = (
            update(QueueJob)
            .where(
                and_(
                    QueueJob.id == job_id,
                    processable_filter(now),
                )
            )
            .values(
                state=JobState.RESERVED,
                reserved_at=lease.reserved_at,
                reserved_until=lease.reserved_until,
                attempt=QueueJob.attempt + 1,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def delete_job(self, job_id: int) -> bool:
        """
        Delete a job.

        Returns:
            True if a row was removed.
        """
        stmt = delete(QueueJob).where(QueueJob.id == job_id)
        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def bury_job(self, job_id: int) -> bool:
        """
        Move a job to the buried state and drop its lease.

        Returns:
            True if the job exists.
        """
        stmt = (
            update(QueueJob)
            .where(QueueJob.id == job_id)
            .values(
                state=JobState.BURIED,
                reserved_at=None,
                reserved_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def reanimate_job(self, job_id: int, until: datetime) -> bool:
        """
        Return a buried job to the ready state.

        Returns:
            True if a buried job with this id existed.
        """
        stmt = (
            update(QueueJob)
            .where(
                and_(
                    QueueJob.id == job_id,
                    QueueJob.state == JobState.BURIED,
                )
            )
            .values(
                state=JobState.READY,
                until=until,
                reserved_at=None,
                reserved_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def count_reserved(self, now: datetime) -> int:
        """Count jobs held under a running lease."""
        stmt = select(func.count()).select_from(QueueJob).where(
            and_(
                QueueJob.state == JobState.RESERVED,
                QueueJob.reserved_until >= now,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_processable(self, now: datetime) -> int:
        """Count jobs a consumer could claim at ``now``."""
        stmt = select(func.count()).select_from(QueueJob).where(processable_filter(now))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_buried(self) -> int:
        """Count buried jobs."""
        stmt = select(func.count()).select_from(QueueJob).where(
            QueueJob.state == JobState.BURIED
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def list_buried(
        self,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[QueueJob], int]:
        """
        List buried jobs ordered by id.

        Returns:
            Tuple of (jobs, total_count).
        """
        total = await self.count_buried()

        stmt = (
            select(QueueJob)
            .where(QueueJob.state == JobState.BURIED)
            .order_by(QueueJob.id.asc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total


class BuriedJobRepository:
    """
    Repository for the broker engine's buried-job archive.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, name: str, data: str, attempt: int, priority: int) -> int:
        """
        Archive a job.

        Returns:
            The archive row id.
        """
        stmt = (
            insert(BuriedJob)
            .values(name=name, data=data, attempt=attempt, priority=priority)
            .returning(BuriedJob.id)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def take(self, row_id: int) -> Row[Any] | None:
        """
        Delete an archive row and return its contents.

        Two concurrent callers cannot both receive the same row: the loser's
        delete matches nothing.
        """
        stmt = (
            delete(BuriedJob)
            .where(BuriedJob.id == row_id)
            .returning(
                BuriedJob.id,
                BuriedJob.name,
                BuriedJob.data,
                BuriedJob.attempt,
                BuriedJob.priority,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.one_or_none()

    async def delete(self, row_id: int) -> bool:
        stmt = delete(BuriedJob).where(BuriedJob.id == row_id)
        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def count(self) -> int:
        stmt = select(func.count()).select_from(BuriedJob)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def list_jobs(
        self,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[BuriedJob], int]:
        """
        List archived jobs ordered by id.

        Returns:
            Tuple of (jobs, total_count).
        """
        total = await self.count()

        stmt = (
            select(BuriedJob)
            .order_by(BuriedJob.id.asc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total
