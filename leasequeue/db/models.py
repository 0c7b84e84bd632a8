"""
SQLAlchemy database models.
Defines the live job table and the buried-job archive table.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from leasequeue.constants import (
    BURIED_TABLE,
    JOB_TABLE,
    MAX_NAME_LENGTH,
    MAX_PRIORITY,
    MIN_PRIORITY,
    JobPriority,
    JobState,
)

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
RowId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueJob(Base):
    """
    A job owned by the polling engine.

    Key constraints:
    - state follows ready -> reserved -> (deleted | buried), buried -> ready
    - reserved_at / reserved_until are set only while state is reserved
    - attempt is bumped by every successful claim
    """

    __tablename__ = JOB_TABLE

    id: Mapped[int] = mapped_column(
        RowId,
        primary_key=True,
        autoincrement=True,
    )

    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            native_enum=False,
            create_constraint=True,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.READY,
    )

    name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)

    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=int(JobPriority.NORMAL),
    )

    # Earliest eligible time, NULL means immediately
    until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Lease
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reserved_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            f"priority BETWEEN {MIN_PRIORITY} AND {MAX_PRIORITY}",
            name="ck_queue_job_priority",
        ),
        # Selection order: priority desc, until asc, id asc
        Index("ix_queue_job_select", "state", "priority", "until", "id"),
        Index("ix_queue_job_lease", "state", "reserved_until"),
    )

    def __repr__(self) -> str:
        return (
            f"QueueJob(id={self.id}, name={self.name}, state={self.state}, "
            f"attempt={self.attempt}, priority={self.priority})"
        )


class BuriedJob(Base):
    """
    A job parked by the broker engine.

    The broker has no notion of a buried message, so buried jobs live here
    until they are reanimated (published again) or deleted.
    """

    __tablename__ = BURIED_TABLE

    id: Mapped[int] = mapped_column(
        RowId,
        primary_key=True,
        autoincrement=True,
    )
    name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=int(JobPriority.NORMAL),
    )
    buried_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"BuriedJob(id={self.id}, name={self.name}, attempt={self.attempt})"
