"""
Event transport abstraction for linksync.

This module provides a pluggable transport interface supporting:
- Kafka/Redpanda (production)
- In-memory (tests and in-process use only)

The transport delivers ordered batches of raw link events and accepts manual
acknowledgements. It never interprets the payload.

Invariants:
    - Records with the same key are delivered in order
    - Offsets only advance through an explicit commit()
    - A failed batch is redelivered after rewind()

How to change safely:
    - New backends must implement the EventTransport protocol
    - Never enable auto-commit; acknowledgement belongs to the consumer
"""

from .base import (
    EventTransport,
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    StreamSerializationError,
    create_transport,
)
from .kafka import KafkaTransport
from .memory import InMemoryTransport

__all__ = [
    # Protocol and types
    "EventTransport",
    "StreamRecord",
    "StreamPos",
    "StreamError",
    "StreamConnectionError",
    "StreamSerializationError",
    # Factory
    "create_transport",
    # Implementations
    "KafkaTransport",
    "InMemoryTransport",
]
