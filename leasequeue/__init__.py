"""
Lease-based Job Queue

A job queue with one contract over two engines: a polled relational table and
a push-style message broker. Jobs carry a priority and an optional due time,
are claimed under a reservation lease and can be retried, buried and
reanimated.
"""

__version__ = "1.0.0"
