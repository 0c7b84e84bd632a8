"""
Job-related type definitions.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generic, TypeAlias, TypeVar

from pydantic import BaseModel

from leasequeue.constants import (
    DEFAULT_PRIORITY,
    MAX_NAME_LENGTH,
    MAX_PRIORITY,
    MIN_PRIORITY,
)
from leasequeue.utils import to_naive_utc, utcnow

PayloadT = TypeVar("PayloadT")


@dataclass(frozen=True)
class LiveDelivery:
    """A message currently delivered to this consumer by the broker."""

    delivery_tag: int

    def __str__(self) -> str:
        return f"delivery:{self.delivery_tag}"


@dataclass(frozen=True)
class ArchivedRow:
    """A buried job stored in the broker engine's archive table."""

    row_id: int

    def __str__(self) -> str:
        return f"archive:{self.row_id}"


# Polling engine rows are addressed by their integer primary key.
JobId: TypeAlias = int | LiveDelivery | ArchivedRow


def validate_priority(priority: int) -> int:
    """
    Check that a priority lies within the supported range.

    Raises:
        ValueError: If the priority is out of bounds.
    """
    value = int(priority)
    if not MIN_PRIORITY <= value <= MAX_PRIORITY:
        raise ValueError(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {value}"
        )
    return value


def validate_name(name: str) -> str:
    """
    Check that a job name is non-empty and bounded.

    Raises:
        ValueError: If the name is empty or too long.
    """
    if not name:
        raise ValueError("job name must not be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"job name must be at most {MAX_NAME_LENGTH} characters")
    return name


@dataclass(frozen=True)
class Job(Generic[PayloadT]):
    """
    One unit of work as handed to a consumer.

    ``attempt`` counts earlier deliveries of this job lineage; the stored
    counter is bumped by every claim, so a job seen for the first time
    carries 0.
    """

    id: JobId
    name: str
    data: PayloadT
    attempt: int = 0
    priority: int = DEFAULT_PRIORITY
    until: datetime | None = None

    def __post_init__(self) -> None:
        validate_name(self.name)
        if self.attempt < 0:
            raise ValueError("attempt must not be negative")
        object.__setattr__(self, "priority", validate_priority(self.priority))
        object.__setattr__(self, "until", to_naive_utc(self.until))


@dataclass
class Lease:
    """
    Reservation lease granted together with a claim.
    """

    reserved_at: datetime
    reserved_until: datetime

    @classmethod
    def grant(cls, duration_seconds: int, now: datetime | None = None) -> "Lease":
        """Start a lease of the given duration at ``now``."""
        start = now or utcnow()
        return cls(
            reserved_at=start,
            reserved_until=start + timedelta(seconds=duration_seconds),
        )


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True
    duration_ms: float | None = None


@dataclass
class QueueStats:
    """Depth and consumer count of a broker queue."""

    message_count: int
    consumer_count: int
