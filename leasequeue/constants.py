"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum, StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - READY -> RESERVED (claimed, lease granted)
    - RESERVED -> RESERVED (lease expired, claimed again)
    - RESERVED -> BURIED (bury)
    - BURIED -> READY (reanimate)

    Deleting a job removes the row, so there is no terminal "done" state.
    """

    READY = "ready"
    RESERVED = "reserved"
    BURIED = "buried"


class JobPriority(IntEnum):
    """Named priority presets (higher = processed first)."""

    NORMAL = 0
    LOW = 2
    MEDIUM = 3
    HIGH = 4


MIN_PRIORITY = 0
MAX_PRIORITY = 5

MAX_NAME_LENGTH = 255

# Default values
DEFAULT_PRIORITY = JobPriority.NORMAL

# Table names
JOB_TABLE = "queue_job"
BURIED_TABLE = "queue_job_buried"

# Broker message headers
DELAY_HEADER = "x-delay"

# Metrics names
METRIC_QUEUE_DEPTH = "queue_depth"
METRIC_JOBS_PUBLISHED = "queue_jobs_published_total"
METRIC_JOBS_CLAIMED = "queue_jobs_claimed_total"
METRIC_CLAIM_CONFLICTS = "queue_claim_conflicts_total"
METRIC_JOBS_BURIED = "queue_jobs_buried_total"
METRIC_JOBS_REANIMATED = "queue_jobs_reanimated_total"
METRIC_JOB_DURATION = "queue_job_duration_seconds"

# Trace span names
SPAN_CLAIM_JOB = "claim_job"
SPAN_PROCESS_JOB = "process_job"
SPAN_REANIMATE_JOB = "reanimate_job"
