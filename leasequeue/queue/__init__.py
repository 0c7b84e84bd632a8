"""
Queue module.
Contains the queue contract and its polling and broker engines.
"""

from leasequeue.queue.interface import JobCallback, Queue
from leasequeue.queue.polling import PollingQueue
from leasequeue.queue.broker import BrokerQueue
from leasequeue.queue.factory import create_queue

__all__ = [
    "Queue",
    "JobCallback",
    "PollingQueue",
    "BrokerQueue",
    "create_queue",
]
