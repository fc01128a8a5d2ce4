"""
Poll loops that drive the linking engines from the transport.

LinkConsumer feeds whole batches to a BatchLinkEngine and acknowledges a
batch only after the engine returns. SingleEventConsumer feeds records one at
a time to a SingleEventLinker and acknowledges after every record of the
poll has been handled, successfully or not.

Invariants:
    - A batch that raised is never committed; the transport is rewound so it is redelivered
    - Store and transport failures (including a failed commit) are survived by rewind + backoff
    - One batch is in flight per consumer; no internal parallelism
    - Malformed records never block acknowledgement

How to change safely:
    - Keep commit strictly after process_batch returns
    - Redelivery after a failed commit relies on the merge being idempotent
    - Monitor failed_batches; a steady climb means a poisoned container or an outage
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from ..stream.base import EventTransport, StreamError, StreamPos, StreamRecord
from .engine import BatchLinkEngine, BatchResult
from .single import SingleEventLinker, SingleLinkResult
from .store import StoreError

logger = logging.getLogger(__name__)


class PollingConsumer(ABC):
    """Shared start/stop loop and failure recovery around run_once()."""

    def __init__(
        self,
        transport: EventTransport,
        topic: str,
        group_id: str,
        batch_size: int = 100,
        poll_timeout_ms: int = 1000,
        failure_backoff_ms: int = 100,
    ) -> None:
        self.transport = transport
        self.topic = topic
        self.group_id = group_id
        self.batch_size = batch_size
        self.poll_timeout_ms = poll_timeout_ms
        self.failure_backoff_ms = failure_backoff_ms

        self._running = False
        self._failed_batches = 0
        self._last_position: StreamPos | None = None

    async def start(self) -> None:
        """Subscribe and run until stop() is called."""
        if self._running:
            logger.warning("Consumer already running", extra={"topic": self.topic})
            return

        self._running = True
        logger.info("Starting consumer", extra={"topic": self.topic, "group_id": self.group_id})

        try:
            await self.transport.subscribe(self.topic, self.group_id)
            while self._running:
                await self.run_once()

        except asyncio.CancelledError:
            logger.info("Consumer cancelled", extra={"topic": self.topic})
        except Exception as e:
            logger.error(f"Consumer error: {e}", exc_info=True, extra={"topic": self.topic})
            raise

        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop after the batch in flight."""
        self._running = False
        logger.info("Stopping consumer", extra={"topic": self.topic})

    @abstractmethod
    async def run_once(self) -> Any:
        """Poll, handle and acknowledge one batch."""
        ...

    async def _poll(self) -> list[StreamRecord]:
        try:
            return await self.transport.poll_batch(self.batch_size, self.poll_timeout_ms)
        except StreamError as e:
            await self._recover("Poll failed", e)
            return []

    async def _recover(
        self,
        message: str,
        error: Exception,
        records: list[StreamRecord] | None = None,
    ) -> None:
        """Log a failed cycle, rewind to the last commit and back off."""
        self._failed_batches += 1

        extra: dict[str, Any] = {"topic": self.topic, "error": str(error)}
        if records:
            extra["records"] = len(records)
            extra["first_position"] = str(records[0].position)
        logger.error(message, extra=extra, exc_info=True)

        try:
            await self.transport.rewind()
        except StreamError as e:
            logger.warning(f"Rewind failed: {e}", extra={"topic": self.topic})

        if self.failure_backoff_ms:
            await asyncio.sleep(self.failure_backoff_ms / 1000.0)

    def _remember(self, records: list[StreamRecord]) -> None:
        self._last_position = records[-1].position


class LinkConsumer(PollingConsumer):
    """Consumes one container kind's batch topic.

    Example:
        >>> consumer = LinkConsumer(transport, engine, "budget-expense-link-events",
        ...                         "budget-linking-group")
        >>> await consumer.start()  # Runs until stopped
    """

    def __init__(
        self,
        transport: EventTransport,
        engine: BatchLinkEngine,
        topic: str,
        group_id: str,
        batch_size: int = 100,
        poll_timeout_ms: int = 1000,
        failure_backoff_ms: int = 100,
    ) -> None:
        """Initialize the consumer.

        Args:
            transport: Transport to poll
            engine: Engine for this topic's container kind
            topic: Topic name
            group_id: Consumer group ID
            batch_size: Maximum records per batch
            poll_timeout_ms: Poll wait when the topic is idle
            failure_backoff_ms: Pause after a failed batch before polling again
        """
        super().__init__(transport, topic, group_id, batch_size, poll_timeout_ms, failure_backoff_ms)
        self.engine = engine

        self._batch_count = 0
        self._event_count = 0
        self._dropped_count = 0
        self._conflict_retries = 0

    async def run_once(self) -> BatchResult | None:
        """Poll, process and acknowledge one batch.

        Returns:
            The batch result, or None if nothing was polled or the batch failed
        """
        records = await self._poll()
        if not records:
            return None

        try:
            result = await self.engine.process_batch(records)
            await self.transport.commit(records)
        except (StoreError, StreamError) as e:
            await self._recover("Link batch failed, leaving it unacknowledged", e, records)
            return None

        self._remember(records)

        self._batch_count += 1
        self._event_count += result.events
        self._dropped_count += result.dropped
        self._conflict_retries += result.conflict_retries
        return result

    @property
    def stats(self) -> dict[str, Any]:
        """Get consumer statistics."""
        return {
            "running": self._running,
            "topic": self.topic,
            "batches": self._batch_count,
            "events": self._event_count,
            "dropped": self._dropped_count,
            "failed_batches": self._failed_batches,
            "conflict_retries": self._conflict_retries,
            "last_position": str(self._last_position) if self._last_position else None,
        }


class SingleEventConsumer(PollingConsumer):
    """Consumes a single-event topic, isolating failures per record."""

    def __init__(
        self,
        transport: EventTransport,
        linker: SingleEventLinker,
        topic: str,
        group_id: str,
        batch_size: int = 100,
        poll_timeout_ms: int = 1000,
        failure_backoff_ms: int = 100,
    ) -> None:
        super().__init__(transport, topic, group_id, batch_size, poll_timeout_ms, failure_backoff_ms)
        self.linker = linker

        self._processed_count = 0
        self._error_count = 0

    async def run_once(self) -> list[SingleLinkResult]:
        """Poll and handle records one by one, then acknowledge them."""
        records = await self._poll()
        if not records:
            return []

        results = []
        for record in records:
            result = await self.linker.handle_record(record)
            if result.success:
                self._processed_count += 1
            else:
                self._error_count += 1
            results.append(result)

        try:
            await self.transport.commit(records)
        except StreamError as e:
            await self._recover("Commit failed, records will be redelivered", e, records)
            return results

        self._remember(records)
        return results

    @property
    def stats(self) -> dict[str, Any]:
        """Get consumer statistics."""
        return {
            "running": self._running,
            "topic": self.topic,
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "failed_batches": self._failed_batches,
            "last_position": str(self._last_position) if self._last_position else None,
        }
