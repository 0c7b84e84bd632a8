"""
Database module.
Contains database connection, models, and repository implementations.
"""

from leasequeue.db.connection import (
    close_db,
    create_engine,
    create_session_factory,
    create_tables,
    get_engine,
    init_db,
)
from leasequeue.db.models import Base, BuriedJob, QueueJob

__all__ = [
    "create_engine",
    "create_session_factory",
    "create_tables",
    "get_engine",
    "init_db",
    "close_db",
    "QueueJob",
    "BuriedJob",
    "Base",
]
