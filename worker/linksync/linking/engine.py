"""
Batch linking engine for linksync.

The engine turns one transport batch into one durable container update:

    parse → collect impacted IDs → bulk load (+ fallback) → mutate → bulk save

On an optimistic conflict it throws the in-memory containers away, reloads
every impacted container and replays the whole ordered event list before
saving again. Replaying everything (rather than patching the delta) is what
makes the result independent of what the concurrent writer did, because the
merge is idempotent per key.

Invariants:
    - Exactly one bulk read per load; single-row reads only for IDs it missed
    - Events are applied in batch order on every attempt
    - At most max_attempts saves per batch, then ConflictRetriesExhausted
    - Store errors other than conflicts propagate without retry

How to change safely:
    - Never cache containers across batches; the map is batch-scoped
    - Keep reapplication full-list; delta patching breaks convergence
    - Test conflict paths with InMemoryContainerStore hooks
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from ..stream.base import StreamRecord
from .events import LinkEvent, parse_batch
from .mutator import apply_events
from .store import Container, ConflictRetriesExhausted, ContainerStore, OptimisticConflictError

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Result of processing one batch.

    Attributes:
        received: Raw records in the batch
        events: Events after parsing and expansion
        dropped: Records dropped as malformed
        impacted: Distinct container IDs referenced
        unresolved: Container IDs not found even after fallback
        applied: Events that hit a loaded container on the final attempt
        saved: Containers persisted
        attempts: Bulk-save attempts made (0 if nothing to save)
        duration_ms: Wall time for the batch
    """

    received: int = 0
    events: int = 0
    dropped: int = 0
    impacted: list[int] = field(default_factory=list)
    unresolved: list[int] = field(default_factory=list)
    applied: int = 0
    saved: int = 0
    attempts: int = 0
    duration_ms: int = 0

    @property
    def conflict_retries(self) -> int:
        return max(self.attempts - 1, 0)


def collect_impacted_ids(events: list[LinkEvent]) -> list[int]:
    """Distinct container IDs in first-seen order."""
    seen: dict[int, None] = {}
    for event in events:
        seen.setdefault(event.container_id, None)
    return list(seen)


class BatchLinkEngine:
    """Applies batches of link events to one container kind.

    Thread safety:
        Holds no state between batches; several engines may share a store.
        Concurrent batches touching the same containers are reconciled by
        the store's version check and full replay.

    Example:
        >>> engine = BatchLinkEngine(store, kind="budget")
        >>> result = await engine.process_batch(records)
        >>> result.saved
        2
    """

    def __init__(
        self,
        store: ContainerStore,
        kind: str = "container",
        max_attempts: int = 3,
        retry_delay_ms: int = 0,
        strict_actions: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Container store for this kind
            kind: Container kind, for logging
            max_attempts: Total bulk-save attempts per batch
            retry_delay_ms: Pause before each conflict retry
            strict_actions: Drop events with unrecognized actions
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.store = store
        self.kind = kind
        self.max_attempts = max_attempts
        self.retry_delay_ms = retry_delay_ms
        self.strict_actions = strict_actions

    async def process_batch(self, records: list[StreamRecord]) -> BatchResult:
        """Parse and apply one transport batch.

        Raises:
            ConflictRetriesExhausted: If conflicts outlast max_attempts
            StoreError: On other storage failures
        """
        started = time.monotonic()
        parsed = parse_batch(records, strict_actions=self.strict_actions)

        result = await self.process_events(parsed.events)
        result.received = parsed.received
        result.dropped = parsed.dropped
        result.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "Processed link batch",
            extra={
                "kind": self.kind,
                "received": result.received,
                "dropped": result.dropped,
                "impacted": len(result.impacted),
                "unresolved": len(result.unresolved),
                "saved": result.saved,
                "attempts": result.attempts,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def process_events(self, events: list[LinkEvent]) -> BatchResult:
        """Load, mutate and persist for an already-parsed event list."""
        result = BatchResult(received=len(events), events=len(events))
        if not events:
            return result

        result.impacted = collect_impacted_ids(events)
        containers, result.unresolved = await self.load_containers(result.impacted)
        self._log_unresolved(result.unresolved, events)
        result.applied = apply_events(containers, events)

        while containers:
            result.attempts += 1
            try:
                await self.store.bulk_save(list(containers.values()))
                result.saved = len(containers)
                break
            except OptimisticConflictError as e:
                if result.attempts >= self.max_attempts:
                    logger.error(
                        "Optimistic conflict retries exhausted",
                        extra={
                            "kind": self.kind,
                            "attempts": result.attempts,
                            "container_ids": e.container_ids,
                        },
                    )
                    raise ConflictRetriesExhausted(
                        f"{self.kind}: conflicts persisted after {result.attempts} attempts",
                        container_ids=e.container_ids,
                    ) from e

                logger.warning(
                    "Optimistic conflict, reloading and replaying batch",
                    extra={
                        "kind": self.kind,
                        "attempt": result.attempts,
                        "container_ids": e.container_ids,
                    },
                )
                if self.retry_delay_ms:
                    await asyncio.sleep(self.retry_delay_ms / 1000.0)

                containers, result.unresolved = await self.load_containers(result.impacted)
                result.applied = apply_events(containers, events)

        return result

    async def load_containers(self, ids: list[int]) -> tuple[dict[int, Container], list[int]]:
        """Bulk-load containers, falling back to single reads for missing IDs.

        Returns:
            (container map, IDs that could not be resolved)
        """
        containers = {c.container_id: c for c in await self.store.bulk_get_by_ids(ids)}

        unresolved: list[int] = []
        if len(containers) < len(ids):
            for container_id in ids:
                if container_id in containers:
                    continue

                logger.warning(
                    "Container missing from bulk load, fetching individually",
                    extra={"kind": self.kind, "container_id": container_id},
                )
                container = await self.store.get_by_id(container_id)
                if container is None:
                    unresolved.append(container_id)
                else:
                    containers[container_id] = container

        return containers, unresolved

    def _log_unresolved(self, unresolved: list[int], events: list[LinkEvent]) -> None:
        for container_id in unresolved:
            skipped = sum(1 for e in events if e.container_id == container_id)
            logger.warning(
                "Skipping events for unresolved container",
                extra={"kind": self.kind, "container_id": container_id, "events": skipped},
            )
