"""
linksync worker - Main entry point.

This module starts the worker with one set of components per container kind:
- LinkConsumer (batch topic -> BatchLinkEngine -> containers table)
- SingleEventConsumer (single-event topic -> member_links table), if enabled

Usage:
    python -m worker.linksync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Each consumer owns its own transport connection and consumer group
    - Kinds never share a SQLite file
    - Graceful shutdown lets the batch in flight finish or be redelivered

How to change safely:
    - Add new consumer types with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import json_log_formatter

from .config import TransportBackend, WorkerConfig
from .linking import (
    BatchLinkEngine,
    LinkConsumer,
    SingleEventConsumer,
    SingleEventLinker,
    SqliteContainerStore,
    SqliteDatabase,
    SqliteMemberLinkStore,
)
from .stream import EventTransport, create_transport

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """A consumer stopped on an error it could not recover from."""

    pass


def setup_logging(config: WorkerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Worker configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)


class Worker:
    """linksync worker orchestrator.

    Manages the lifecycle of every consumer:
    - Transport connections (one per consumer)
    - SQLite databases (one per container kind)
    - Background poll loops

    Attributes:
        config: Worker configuration
        consumers: Running consumers, batch and single-event

    Example:
        >>> worker = Worker()
        >>> await worker.start()
        >>> # Worker is running until request_shutdown()
        >>> await worker.stop()
    """

    def __init__(self, config: WorkerConfig | None = None) -> None:
        """Initialize the worker.

        Args:
            config: Optional worker configuration (loaded from env if not provided)
        """
        self.config = config or WorkerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._consumer_error: BaseException | None = None

        self.databases: dict[str, SqliteDatabase] = {}
        self.transports: list[EventTransport] = []
        self.consumers: list[LinkConsumer | SingleEventConsumer] = []

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start every consumer and wait for shutdown."""
        if self._running:
            logger.warning("Worker already running")
            return

        logger.info("Starting linksync worker")
        self.config.log_config()
        if self.config.transport_backend == TransportBackend.MEMORY:
            logger.warning(
                "In-memory transport selected; each consumer gets a private transport "
                "that only in-process code can publish to"
            )

        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

            for kind in self.config.sync.kinds:
                await self._start_kind(kind)

            self._running = True
            logger.info(
                "linksync worker started",
                extra={"kinds": list(self.config.sync.kinds), "consumers": len(self.consumers)},
            )

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Worker startup failed: {e}", exc_info=True)
            await self.stop()
            raise

        if self._consumer_error is not None:
            raise WorkerError(f"Consumer stopped: {self._consumer_error}") from self._consumer_error

    async def _start_kind(self, kind: str) -> None:
        sync = self.config.sync
        storage = self.config.storage

        db = SqliteDatabase(
            storage.data_dir,
            kind,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            cache_size_pages=storage.cache_size_pages,
        )
        self.databases[kind] = db

        engine = BatchLinkEngine(
            SqliteContainerStore(db),
            kind=kind,
            max_attempts=sync.max_attempts,
            retry_delay_ms=sync.retry_delay_ms,
            strict_actions=sync.strict_actions,
        )
        consumer = LinkConsumer(
            transport=await self._connect_transport(),
            engine=engine,
            topic=sync.topic_for(kind),
            group_id=sync.group_for(kind),
            batch_size=sync.batch_size,
            poll_timeout_ms=self.config.kafka.poll_timeout_ms,
            failure_backoff_ms=sync.retry_delay_ms,
        )
        self._launch(consumer)

        if sync.single_event_enabled:
            linker = SingleEventLinker(
                SqliteMemberLinkStore(db),
                kind=kind,
                strict_actions=sync.strict_actions,
            )
            single = SingleEventConsumer(
                transport=await self._connect_transport(),
                linker=linker,
                topic=sync.single_event_topic_for(kind),
                group_id=sync.single_event_group_for(kind),
                batch_size=sync.batch_size,
                poll_timeout_ms=self.config.kafka.poll_timeout_ms,
                failure_backoff_ms=sync.retry_delay_ms,
            )
            self._launch(single)

    async def _connect_transport(self) -> EventTransport:
        transport = create_transport(self.config)
        await transport.connect()
        self.transports.append(transport)
        return transport

    def _launch(self, consumer: LinkConsumer | SingleEventConsumer) -> None:
        self.consumers.append(consumer)
        task = asyncio.create_task(consumer.start())
        task.add_done_callback(functools.partial(self._on_consumer_done, consumer))
        self._tasks.append(task)

    def _on_consumer_done(self, consumer: LinkConsumer | SingleEventConsumer, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        if self._consumer_error is None:
            self._consumer_error = task.exception()
        logger.error(
            "Consumer task died, shutting down worker",
            extra={"topic": consumer.topic, "error": str(task.exception())},
        )
        self.request_shutdown()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if not self._running and not self.transports:
            return

        logger.info("Stopping linksync worker")

        for consumer in self.consumers:
            await consumer.stop()

        # Stop background tasks
        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        for transport in self.transports:
            await transport.close()

        self._tasks.clear()
        self.transports.clear()
        self._running = False
        logger.info("linksync worker stopped", extra={"stats": self.stats})

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    @property
    def stats(self) -> list[dict[str, Any]]:
        """Statistics of every consumer."""
        return [consumer.stats for consumer in self.consumers]


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = WorkerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    worker = Worker(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        worker.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = 0
    try:
        loop.run_until_complete(worker.start())
    except KeyboardInterrupt:
        pass
    except WorkerError as e:
        logger.error(f"Worker failed: {e}")
        exit_code = 1
    finally:
        loop.run_until_complete(worker.stop())
        loop.close()

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
