"""
In-memory transport implementation for testing.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests
- Running the worker without a Kafka cluster; only in-process code holding
  the instance can publish, and Worker gives every consumer its own

Invariants:
    - All data is lost on process exit
    - Same key always maps to the same partition, preserving per-key order
    - Uncommitted records are delivered again after rewind()

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the EventTransport protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .base import (
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    highest_positions,
)

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""
    records: List[StreamRecord] = field(default_factory=list)
    next_offset: int = 0


class InMemoryTransport:
    """In-memory implementation of EventTransport for testing.

    Acts as both producer (publish) and consumer (poll_batch/commit) so a
    test can feed records and observe acknowledgements on one object.

    Attributes:
        num_partitions: Number of partitions per topic

    Example:
        >>> transport = InMemoryTransport()
        >>> await transport.connect()
        >>> await transport.publish_json("t", "5", {"userId": 1, "containerId": 5, "memberId": 9})
        >>> await transport.subscribe("t", "g")
        >>> records = await transport.poll_batch(max_records=10)
    """

    def __init__(self, num_partitions: int = 4) -> None:
        """Initialize in-memory transport.

        Args:
            num_partitions: Number of partitions per topic
        """
        self.num_partitions = num_partitions
        self._topics: Dict[str, Dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        # group_id -> topic -> partition -> next offset to consume
        self._committed: Dict[str, Dict[str, Dict[int, int]]] = defaultdict(
            lambda: defaultdict(lambda: defaultdict(int))
        )
        self._positions: Dict[int, int] = {}
        self._topic: Optional[str] = None
        self._group_id: Optional[str] = None
        self._connected = False
        self._new_records = asyncio.Event()
        self.commit_count = 0
        self.rewind_count = 0

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryTransport connected")

    async def close(self) -> None:
        """Close; published data and committed offsets are kept."""
        self._connected = False
        self._topic = None
        self._group_id = None
        logger.debug("InMemoryTransport closed")

    async def publish(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: Optional[Dict[str, bytes]] = None,
    ) -> StreamPos:
        """Append a record to a topic.

        Returns:
            StreamPos with partition and offset
        """
        if not self._connected:
            raise StreamConnectionError("Not connected")

        partition = self._partition_for_key(key)
        part = self._topics[topic][partition]
        pos = StreamPos(
            topic=topic,
            partition=partition,
            offset=part.next_offset,
            timestamp_ms=int(time.time() * 1000),
        )
        part.records.append(StreamRecord(key=key, value=value, position=pos, headers=headers or {}))
        part.next_offset += 1
        self._new_records.set()
        return pos

    async def publish_json(self, topic: str, key: str, payload: Any) -> StreamPos:
        """Append a JSON-encoded record (testing helper)."""
        return await self.publish(topic, key, json.dumps(payload).encode("utf-8"))

    async def subscribe(self, topic: str, group_id: str) -> None:
        """Start consuming a topic from the group's committed offsets."""
        if not self._connected:
            raise StreamConnectionError("Not connected")

        self._topic = topic
        self._group_id = group_id
        self._positions = dict(self._committed[group_id][topic])

    async def poll_batch(
        self,
        max_records: int,
        timeout_ms: int = 1000,
    ) -> List[StreamRecord]:
        """Return up to max_records unconsumed records, partition by partition."""
        if self._topic is None:
            raise StreamError("No active subscription; call subscribe() first")

        batch = self._take(max_records)
        if not batch and timeout_ms > 0:
            self._new_records.clear()
            try:
                await asyncio.wait_for(self._new_records.wait(), timeout=timeout_ms / 1000.0)
            except asyncio.TimeoutError:
                pass
            batch = self._take(max_records)
        return batch

    def _take(self, max_records: int) -> List[StreamRecord]:
        batch: List[StreamRecord] = []
        partitions = self._topics[self._topic]
        for partition in range(self.num_partitions):
            part = partitions[partition]
            current = self._positions.get(partition, 0)
            while current < len(part.records) and len(batch) < max_records:
                batch.append(part.records[current])
                current += 1
            self._positions[partition] = current
            if len(batch) >= max_records:
                break
        return batch

    async def commit(self, records: List[StreamRecord]) -> None:
        """Record the next offset to consume for each partition in the batch."""
        if self._group_id is None:
            raise StreamError("No active subscription to commit")

        for pos in highest_positions(records).values():
            self._committed[self._group_id][pos.topic][pos.partition] = pos.offset + 1
        self.commit_count += 1

    async def rewind(self) -> None:
        """Move read positions back to the committed offsets."""
        if self._group_id is None or self._topic is None:
            return
        self._positions = dict(self._committed[self._group_id][self._topic])
        self.rewind_count += 1

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        hash_int = int.from_bytes(hash_bytes[:4], "big")
        return hash_int % self.num_partitions

    # Testing helpers

    def get_committed(self, topic: str, group_id: str) -> Dict[int, int]:
        """Committed next-offsets per partition (testing helper)."""
        return dict(self._committed[group_id][topic])

    def get_record_count(self, topic: str) -> int:
        """Total record count for a topic (testing helper)."""
        if topic not in self._topics:
            return 0
        return sum(len(part.records) for part in self._topics[topic].values())

    def get_lag(self, topic: str, group_id: str) -> int:
        """Records not yet committed by a group (testing helper)."""
        committed = self._committed[group_id][topic]
        return sum(
            len(part.records) - committed.get(partition, 0)
            for partition, part in self._topics[topic].items()
        )
