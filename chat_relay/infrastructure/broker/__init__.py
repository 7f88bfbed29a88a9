"""
Broker Module

RabbitMQ connection, topology, publishing and queue administration (aio_pika).
"""

from .connection import BrokerConnection, mask_url
from .producer import MAX_MESSAGE_BYTES, MessageBuilder, Producer, PublishOptions, validate_queue_name
from .queue_manager import QueueManager, dead_letter_exchange_for, dead_letter_queue_for
from .topology import DEFAULT_EXCHANGE, Topology, TopologyNames

__all__ = [
    "BrokerConnection",
    "DEFAULT_EXCHANGE",
    "MAX_MESSAGE_BYTES",
    "MessageBuilder",
    "Producer",
    "PublishOptions",
    "QueueManager",
    "Topology",
    "TopologyNames",
    "dead_letter_exchange_for",
    "dead_letter_queue_for",
    "mask_url",
    "validate_queue_name",
]
