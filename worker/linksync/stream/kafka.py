"""
Kafka/Redpanda transport implementation.

Works with Apache Kafka, Amazon MSK, Redpanda, or any Kafka API-compatible
system.

Invariants:
    - Consumer never auto-commits; offsets move only through commit()
    - A batch is fetched with getmany() and bounded by max_records
    - rewind() seeks uncommitted partitions back to the start of the failed batch

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Verify redelivery by failing a batch and checking it is polled again
    - Monitor consumer lag per container kind in production
"""

from __future__ import annotations

import logging
import time
from typing import Any

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaConnectionError, KafkaError
from aiokafka.helpers import create_ssl_context
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from .base import (
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    highest_positions,
)

logger = logging.getLogger(__name__)


class KafkaTransport:
    """Kafka implementation of the EventTransport protocol.

    Uses aiokafka's consumer in manual-commit mode. One instance serves one
    topic/consumer group.

    Attributes:
        config: Kafka configuration

    Example:
        >>> config = KafkaConfig(brokers="localhost:9092")
        >>> transport = KafkaTransport(config)
        >>> await transport.connect()
        >>> await transport.subscribe("category-expense-link-events", "category-linking-group")
        >>> records = await transport.poll_batch(max_records=100)
    """

    def __init__(self, config: Any) -> None:
        """Initialize the Kafka transport.

        Args:
            config: KafkaConfig instance with connection settings
        """
        self.config = config
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False
        self._topic: str | None = None
        self._group_id: str | None = None
        # First uncommitted offset per partition, for rewind()
        self._pending: dict[TopicPartition, int] = {}

    @property
    def is_connected(self) -> bool:
        """Whether a consumer is running."""
        return self._connected and self._consumer is not None

    async def connect(self) -> None:
        """Mark the transport ready; the consumer itself starts in subscribe()."""
        self._connected = True

    def _consumer_config(self, group_id: str) -> dict[str, Any]:
        consumer_config: dict[str, Any] = {
            "bootstrap_servers": self.config.brokers,
            "group_id": group_id,
            "auto_offset_reset": self.config.auto_offset_reset,
            "enable_auto_commit": False,
            "max_poll_records": self.config.max_poll_records,
            "session_timeout_ms": self.config.session_timeout_ms,
            "heartbeat_interval_ms": self.config.heartbeat_interval_ms,
        }

        if self.config.security_protocol != "PLAINTEXT":
            consumer_config["security_protocol"] = self.config.security_protocol

        if self.config.sasl_mechanism:
            consumer_config["sasl_mechanism"] = self.config.sasl_mechanism
            consumer_config["sasl_plain_username"] = self.config.sasl_username
            consumer_config["sasl_plain_password"] = self.config.sasl_password

        if self.config.ssl_cafile:
            consumer_config["ssl_context"] = create_ssl_context(
                cafile=self.config.ssl_cafile,
                certfile=self.config.ssl_certfile,
                keyfile=self.config.ssl_keyfile,
            )

        return consumer_config

    async def subscribe(self, topic: str, group_id: str) -> None:
        """Start a consumer for the topic.

        Args:
            topic: Topic to subscribe to
            group_id: Consumer group for coordination

        Raises:
            StreamConnectionError: If the consumer cannot start
        """
        if self._consumer:
            await self._consumer.stop()

        try:
            self._consumer = AIOKafkaConsumer(topic, **self._consumer_config(group_id))
            await self._consumer.start()
        except KafkaConnectionError as e:
            self._consumer = None
            raise StreamConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            self._consumer = None
            raise StreamError(f"Consumer error: {e}") from e

        self._connected = True
        self._topic = topic
        self._group_id = group_id
        self._pending.clear()

        logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

    async def poll_batch(
        self,
        max_records: int,
        timeout_ms: int = 1000,
    ) -> list[StreamRecord]:
        """Fetch up to max_records records.

        Records are returned grouped by partition, in offset order within each
        partition.

        Raises:
            StreamError: If no consumer is running or the fetch fails
        """
        if not self._consumer:
            raise StreamError("No active consumer; call subscribe() first")

        try:
            fetched = await self._consumer.getmany(timeout_ms=timeout_ms, max_records=max_records)
        except KafkaConnectionError as e:
            raise StreamConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Kafka fetch failed: {e}") from e

        records: list[StreamRecord] = []
        for tp, messages in fetched.items():
            if messages and tp not in self._pending:
                self._pending[tp] = messages[0].offset

            for msg in messages:
                records.append(
                    StreamRecord(
                        key=msg.key.decode("utf-8") if msg.key else "",
                        value=msg.value or b"",
                        position=StreamPos(
                            topic=msg.topic,
                            partition=msg.partition,
                            offset=msg.offset,
                            timestamp_ms=msg.timestamp or int(time.time() * 1000),
                        ),
                        headers=dict(msg.headers) if msg.headers else {},
                    )
                )

        return records

    async def commit(self, records: list[StreamRecord]) -> None:
        """Commit offsets for a processed batch.

        Raises:
            StreamError: If commit fails
        """
        if not records:
            return
        if not self._consumer:
            raise StreamError("No active consumer to commit")

        offsets = {
            TopicPartition(pos.topic, pos.partition): OffsetAndMetadata(pos.offset + 1, "")
            for pos in highest_positions(records).values()
        }

        try:
            await self._consumer.commit(offsets)
        except KafkaError as e:
            raise StreamError(f"Failed to commit: {e}") from e

        for tp in offsets:
            self._pending.pop(tp, None)

        logger.debug(
            "Committed offsets",
            extra={"offsets": {f"{tp.topic}:{tp.partition}": om.offset for tp, om in offsets.items()}},
        )

    async def rewind(self) -> None:
        """Seek partitions with uncommitted records back to the first of them."""
        if not self._consumer:
            return

        for tp, offset in self._pending.items():
            try:
                self._consumer.seek(tp, offset)
            except KafkaError as e:
                # Revoked in a rebalance; the new owner resumes from the committed offset
                logger.warning(
                    f"Cannot rewind partition: {e}",
                    extra={"topic": tp.topic, "partition": tp.partition},
                )
                continue
            logger.info(
                "Rewound partition for redelivery",
                extra={"topic": tp.topic, "partition": tp.partition, "offset": offset},
            )
        self._pending.clear()

    async def close(self) -> None:
        """Stop the consumer."""
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        self._connected = False
        logger.info("Kafka consumer closed", extra={"topic": self._topic, "group_id": self._group_id})
