"""
Configuration management for the linksync worker.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Kafka auto-commit is never configurable; acknowledgement is manual
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep {kind} in topic and group patterns so each container kind stays isolated
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class TransportBackend(Enum):
    """Supported event transports.

    MEMORY is for tests: each consumer gets a private in-process transport,
    so nothing outside the process can publish to it.
    """

    KAFKA = "kafka"
    MEMORY = "memory"


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda transport configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        ssl_certfile: Path to client certificate file
        ssl_keyfile: Path to client key file
        auto_offset_reset: Where a new consumer group starts (earliest, latest)
        max_poll_records: Upper bound the broker client fetches per poll
        session_timeout_ms: Consumer group session timeout
        heartbeat_interval_ms: Consumer heartbeat interval
        poll_timeout_ms: How long one poll waits for records
    """

    brokers: str = "localhost:9092"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    ssl_certfile: str | None = None
    ssl_keyfile: str | None = None
    auto_offset_reset: str = "earliest"
    max_poll_records: int = 500
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000
    poll_timeout_ms: int = 1000

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            ssl_certfile=os.getenv("KAFKA_SSL_CERTFILE"),
            ssl_keyfile=os.getenv("KAFKA_SSL_KEYFILE"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
            max_poll_records=int(os.getenv("KAFKA_MAX_POLL_RECORDS", "500")),
            session_timeout_ms=int(os.getenv("KAFKA_SESSION_TIMEOUT_MS", "30000")),
            heartbeat_interval_ms=int(os.getenv("KAFKA_HEARTBEAT_INTERVAL_MS", "10000")),
            poll_timeout_ms=int(os.getenv("KAFKA_POLL_TIMEOUT_MS", "1000")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for SQLite databases (one file per container kind)
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/linksync"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/linksync"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Linking engine and consumer loop configuration.

    Attributes:
        kinds: Container kinds to run a consumer for
        topic_pattern: Batch topic name, formatted with {kind}
        group_pattern: Consumer group ID, formatted with {kind}
        batch_size: Maximum events per processing cycle
        max_attempts: Total bulk-save attempts per batch under optimistic conflicts
        retry_delay_ms: Pause between conflict retries and after a failed batch
        strict_actions: Drop events with unrecognized actions instead of treating them as ADD
        single_event_enabled: Run the single-event linking consumers
        single_event_topic_pattern: Single-event topic name, formatted with {kind}
        single_event_group_pattern: Single-event consumer group ID, formatted with {kind}
    """

    kinds: tuple[str, ...] = ("category", "budget", "payment_method")
    topic_pattern: str = "{kind}-expense-link-events"
    group_pattern: str = "{kind}-linking-group"
    batch_size: int = 100
    max_attempts: int = 3
    retry_delay_ms: int = 100
    strict_actions: bool = False
    single_event_enabled: bool = False
    single_event_topic_pattern: str = "expense-{kind}-ref-events"
    single_event_group_pattern: str = "expense-{kind}-ref-group"

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        kinds_str = os.getenv("LINKSYNC_KINDS", "category,budget,payment_method")
        return cls(
            kinds=tuple(k.strip() for k in kinds_str.split(",") if k.strip()),
            topic_pattern=os.getenv("LINKSYNC_TOPIC_PATTERN", "{kind}-expense-link-events"),
            group_pattern=os.getenv("LINKSYNC_GROUP_PATTERN", "{kind}-linking-group"),
            batch_size=int(os.getenv("LINKSYNC_BATCH_SIZE", "100")),
            max_attempts=int(os.getenv("LINKSYNC_MAX_ATTEMPTS", "3")),
            retry_delay_ms=int(os.getenv("LINKSYNC_RETRY_DELAY_MS", "100")),
            strict_actions=_env_bool("LINKSYNC_STRICT_ACTIONS", "false"),
            single_event_enabled=_env_bool("LINKSYNC_SINGLE_EVENT_ENABLED", "false"),
            single_event_topic_pattern=os.getenv(
                "LINKSYNC_SINGLE_EVENT_TOPIC_PATTERN", "expense-{kind}-ref-events"
            ),
            single_event_group_pattern=os.getenv(
                "LINKSYNC_SINGLE_EVENT_GROUP_PATTERN", "expense-{kind}-ref-group"
            ),
        )

    def topic_for(self, kind: str) -> str:
        return self.topic_pattern.format(kind=kind)

    def group_for(self, kind: str) -> str:
        return self.group_pattern.format(kind=kind)

    def single_event_topic_for(self, kind: str) -> str:
        return self.single_event_topic_pattern.format(kind=kind)

    def single_event_group_for(self, kind: str) -> str:
        return self.single_event_group_pattern.format(kind=kind)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class WorkerConfig:
    """Complete worker configuration.

    Attributes:
        transport_backend: Which transport to consume from
        kafka: Kafka configuration (if transport_backend is KAFKA)
        storage: Local storage configuration
        sync: Linking engine configuration
        observability: Logging configuration
    """

    transport_backend: TransportBackend = TransportBackend.KAFKA
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> WorkerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("TRANSPORT_BACKEND", "kafka").lower()
        try:
            transport_backend = TransportBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid TRANSPORT_BACKEND '{backend_str}'. Must be one of: kafka, memory"
            ) from None

        config = cls(
            transport_backend=transport_backend,
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            sync=SyncConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.transport_backend == TransportBackend.KAFKA and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when TRANSPORT_BACKEND=kafka")

        if not self.sync.kinds:
            raise ValueError("LINKSYNC_KINDS must name at least one container kind")
        if self.sync.batch_size < 1:
            raise ValueError("LINKSYNC_BATCH_SIZE must be at least 1")
        if self.sync.max_attempts < 1:
            raise ValueError("LINKSYNC_MAX_ATTEMPTS must be at least 1")
        if self.sync.retry_delay_ms < 0:
            raise ValueError("LINKSYNC_RETRY_DELAY_MS must not be negative")

        for name, pattern in (
            ("LINKSYNC_TOPIC_PATTERN", self.sync.topic_pattern),
            ("LINKSYNC_GROUP_PATTERN", self.sync.group_pattern),
            ("LINKSYNC_SINGLE_EVENT_TOPIC_PATTERN", self.sync.single_event_topic_pattern),
            ("LINKSYNC_SINGLE_EVENT_GROUP_PATTERN", self.sync.single_event_group_pattern),
        ):
            if "{kind}" not in pattern:
                raise ValueError(f"{name} must contain '{{kind}}'")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Worker configuration loaded",
            extra={
                "transport_backend": self.transport_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.transport_backend == TransportBackend.KAFKA
                else None,
                "kinds": list(self.sync.kinds),
                "topics": [self.sync.topic_for(kind) for kind in self.sync.kinds],
                "batch_size": self.sync.batch_size,
                "max_attempts": self.sync.max_attempts,
                "strict_actions": self.sync.strict_actions,
                "single_event_enabled": self.sync.single_event_enabled,
                "data_dir": self.storage.data_dir,
                "log_level": self.observability.log_level,
            },
        )
