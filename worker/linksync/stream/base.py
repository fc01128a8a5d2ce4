"""
Base protocol and types for the event transport abstraction.

This module defines the EventTransport protocol that all backends must
implement, along with common types for stream positions, records, and errors.

Invariants:
    - StreamPos uniquely identifies a position in the stream
    - StreamRecord contains the raw event bytes plus metadata
    - poll_batch() returns records in partition order
    - Nothing is acknowledged until commit() is called explicitly

How to change safely:
    - Protocol changes require updating all implementations
    - Keep auto-commit disabled in every backend; the consumer owns acks
    - rewind() must return to the last committed position, not the last polled one
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import WorkerConfig

logger = logging.getLogger(__name__)


class StreamError(Exception):
    """Base exception for transport operations."""
    pass


class StreamConnectionError(StreamError):
    """Connection to the transport backend failed."""
    pass


class StreamSerializationError(StreamError):
    """Failed to deserialize a record."""
    pass


@dataclass(frozen=True)
class StreamPos:
    """Position of a record in the stream.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within partition
        timestamp_ms: Timestamp when the record was written (milliseconds)
    """
    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A raw record delivered by the transport.

    Attributes:
        key: Partition key (container ID or user ID, chosen by the producer)
        value: Event payload (bytes, JSON-encoded link event)
        position: Position in the stream
        headers: Optional headers/metadata

    Example:
        >>> records = await transport.poll_batch(max_records=100)
        >>> result = await engine.process_batch(records)
        >>> await transport.commit(records)
    """
    key: str
    value: bytes
    position: StreamPos
    headers: Dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Parse value as JSON.

        Returns:
            Parsed JSON value

        Raises:
            StreamSerializationError: If value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StreamSerializationError(f"Failed to parse record value as JSON: {e}") from e

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class EventTransport(Protocol):
    """Protocol for batch-oriented event transports.

    Delivery contract:
        - At-least-once: records not committed are delivered again
        - Records sharing a key land in one partition and arrive in order
        - commit() acknowledges everything up to and including the given records

    Example:
        >>> transport = KafkaTransport(config)
        >>> await transport.connect()
        >>> await transport.subscribe("budget-expense-link-events", "budget-linking-group")
        >>> records = await transport.poll_batch(max_records=100)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    @abstractmethod
    async def subscribe(self, topic: str, group_id: str) -> None:
        """Join a consumer group on a topic.

        Args:
            topic: Topic to consume
            group_id: Consumer group ID for coordination and committed offsets
        """
        ...

    @abstractmethod
    async def poll_batch(
        self,
        max_records: int,
        timeout_ms: int = 1000,
    ) -> List[StreamRecord]:
        """Fetch the next batch of records.

        Args:
            max_records: Upper bound on the batch size
            timeout_ms: How long to wait when nothing is available

        Returns:
            Up to max_records records, possibly empty
        """
        ...

    @abstractmethod
    async def commit(self, records: List[StreamRecord]) -> None:
        """Acknowledge a processed batch.

        Args:
            records: Records of the batch; the highest offset per partition is committed

        Raises:
            StreamError: If commit fails
        """
        ...

    @abstractmethod
    async def rewind(self) -> None:
        """Seek every assigned partition back to its last committed offset.

        Used after a failed batch so that the next poll redelivers it.
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def highest_positions(records: List[StreamRecord]) -> Dict[tuple, StreamPos]:
    """Return the highest position per (topic, partition) in a batch."""
    highest: Dict[tuple, StreamPos] = {}
    for record in records:
        pos = record.position
        tp = (pos.topic, pos.partition)
        current = highest.get(tp)
        if current is None or pos.offset > current.offset:
            highest[tp] = pos
    return highest


def create_transport(config: "WorkerConfig") -> EventTransport:
    """Factory function to create a transport from configuration.

    Args:
        config: Worker configuration

    Returns:
        A new, unconnected EventTransport

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import TransportBackend
    from .kafka import KafkaTransport
    from .memory import InMemoryTransport

    if config.transport_backend == TransportBackend.KAFKA:
        return KafkaTransport(config.kafka)
    elif config.transport_backend == TransportBackend.MEMORY:
        return InMemoryTransport()
    else:
        raise ValueError(f"Unsupported transport backend: {config.transport_backend}")
