"""
Broker module.
Contains the message channel abstraction, its AMQP adapter and the message
envelope.
"""

from leasequeue.broker.channel import AmqpChannel, Delivery, MessageChannel
from leasequeue.broker.messages import MessageEnvelope

__all__ = [
    "MessageChannel",
    "AmqpChannel",
    "Delivery",
    "MessageEnvelope",
]
