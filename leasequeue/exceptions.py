"""
Queue exceptions.

Infrastructure failures (SQLAlchemy, aio-pika) are not wrapped; they reach the
caller unchanged. The classes here cover contract violations and corrupted
payloads.
"""

from typing import Any


class QueueError(Exception):
    """Base class for queue errors."""


class ProcessingStateError(QueueError, RuntimeError):
    """
    Raised when the processing loop is used out of order.

    Entering ``process`` while already processing, or calling
    ``stop_processing`` while idle, is a programming error.
    """


class PayloadDecodeError(QueueError):
    """
    Raised when a stored or delivered record does not decode to a job.

    Attributes:
        operation: The queue operation that was decoding.
        job_id: The identifier of the offending record, when known.
    """

    def __init__(self, message: str, *, operation: str, job_id: Any = None):
        self.operation = operation
        self.job_id = job_id
        detail = f"{operation}: {message}"
        if job_id is not None:
            detail = f"{detail} (job_id={job_id})"
        super().__init__(detail)


class UnsupportedIdentifierError(QueueError, TypeError):
    """Raised when an identifier belongs to a different engine."""
