"""
Worker module.
Contains the job handler registry and the worker process.
"""

from leasequeue.worker.handlers import execute_job, register_handler
from leasequeue.worker.main import Worker, run

__all__ = ["Worker", "run", "execute_job", "register_handler"]
