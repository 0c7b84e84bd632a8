"""
Pagination types for the buried-job archive.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Generic

from pydantic import BaseModel, Field

from leasequeue.types.job import Job, PayloadT


class Paginate(BaseModel):
    """Pagination parameters."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        """Number of rows skipped before this page."""
        return (self.page - 1) * self.page_size


@dataclass
class BuriedJobs(Generic[PayloadT]):
    """One page of buried jobs plus the total number of buried jobs."""

    jobs: list[Job[PayloadT]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    def __iter__(self) -> Iterator[Job[PayloadT]]:
        return iter(self.jobs)

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total
