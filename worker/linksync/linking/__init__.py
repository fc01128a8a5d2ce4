"""
Linking module for linksync - folds link events into container associations.

This module handles:
- Parsing raw records into normalized LinkEvents
- The batch engine (bulk load, ordered mutation, versioned bulk save)
- Single-event linking of a member's own container references
- SQLite and in-memory container stores
- Consumer loops that acknowledge only processed work

Invariants:
    - REMOVE is set difference, ADD and UPDATE are set union, on every path
    - A batch is saved with one bulk write and retried by full replay on conflict
    - Malformed events are dropped individually and never fail a batch

How to change safely:
    - Keep every store copy-in/copy-out; the engine mutates what it loads
    - Verify conflict convergence with InMemoryContainerStore.concurrent_update
"""

from .consumer import LinkConsumer, SingleEventConsumer
from .engine import BatchLinkEngine, BatchResult, collect_impacted_ids
from .events import LinkAction, LinkEvent, MalformedEventError, ParsedBatch, parse_batch, parse_record
from .memory_store import InMemoryContainerStore
from .mutator import apply_event, apply_events, merge_ids
from .single import MemberLinkStore, SingleEventLinker, SingleLinkResult
from .sqlite_store import (
    MemberOwnershipError,
    SqliteContainerStore,
    SqliteDatabase,
    SqliteMemberLinkStore,
)
from .store import (
    ConflictRetriesExhausted,
    Container,
    ContainerStore,
    OptimisticConflictError,
    StoreError,
)

__all__ = [
    # Events
    "LinkAction",
    "LinkEvent",
    "MalformedEventError",
    "ParsedBatch",
    "parse_batch",
    "parse_record",
    # Model and stores
    "Container",
    "ContainerStore",
    "StoreError",
    "OptimisticConflictError",
    "ConflictRetriesExhausted",
    "InMemoryContainerStore",
    "SqliteDatabase",
    "SqliteContainerStore",
    "SqliteMemberLinkStore",
    "MemberOwnershipError",
    # Engine
    "merge_ids",
    "apply_event",
    "apply_events",
    "collect_impacted_ids",
    "BatchLinkEngine",
    "BatchResult",
    # Single-event path
    "MemberLinkStore",
    "SingleEventLinker",
    "SingleLinkResult",
    # Consumers
    "LinkConsumer",
    "SingleEventConsumer",
]
