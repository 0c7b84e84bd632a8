"""
Type definitions for the job queue.
"""

from leasequeue.types.job import (
    ArchivedRow,
    Job,
    JobId,
    JobResult,
    Lease,
    LiveDelivery,
    PayloadT,
    QueueStats,
    validate_name,
    validate_priority,
)
from leasequeue.types.page import BuriedJobs, Paginate

__all__ = [
    # Job types
    "Job",
    "JobId",
    "LiveDelivery",
    "ArchivedRow",
    "Lease",
    "JobResult",
    "PayloadT",
    "QueueStats",
    "validate_name",
    "validate_priority",
    # Archive types
    "Paginate",
    "BuriedJobs",
]
