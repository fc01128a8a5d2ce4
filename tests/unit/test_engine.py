"""
Unit tests for the batch linking engine.

Tests cover:
- The reference batch (ordering, fallback load, single bulk save)
- Bulk-load completeness
- Conflict convergence and the retry bound, in memory and on SQLite
- Store error propagation
- Unresolvable containers
"""

import json
import tempfile

import pytest

from worker.linksync.linking.engine import BatchLinkEngine, collect_impacted_ids
from worker.linksync.linking.events import LinkAction, LinkEvent
from worker.linksync.linking.memory_store import InMemoryContainerStore
from worker.linksync.linking.sqlite_store import SqliteContainerStore, SqliteDatabase
from worker.linksync.linking.store import (
    ConflictRetriesExhausted,
    Container,
    OptimisticConflictError,
    StoreError,
)
from worker.linksync.stream.base import StreamPos, StreamRecord


def _event(action, container_id, user_id, member_id):
    return LinkEvent(
        user_id=user_id,
        container_id=container_id,
        member_id=member_id,
        action=LinkAction(action),
    )


def _records(*payloads):
    return [
        StreamRecord(
            key=str(i),
            value=payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8"),
            position=StreamPos(topic="t", partition=0, offset=i, timestamp_ms=1),
        )
        for i, payload in enumerate(payloads)
    ]


class TestBatchLinkEngine:
    """Tests for BatchLinkEngine."""

    @pytest.fixture
    def store(self):
        """Store with container 5 (empty) and container 7 hidden from bulk reads."""
        store = InMemoryContainerStore(
            [Container(container_id=5), Container(container_id=7, name="Travel")]
        )
        store.bulk_hidden.add(7)
        return store

    @pytest.fixture
    def engine(self, store):
        return BatchLinkEngine(store, kind="budget", max_attempts=3)

    @pytest.mark.asyncio
    async def test_reference_batch(self, engine, store):
        """Ordered events, fallback load, and one save for both containers."""
        events = [
            _event("ADD", 5, 1, 100),
            _event("ADD", 5, 1, 101),
            _event("REMOVE", 5, 1, 100),
            _event("ADD", 7, 2, 200),
        ]

        result = await engine.process_events(events)

        assert store.get_stored(5).associations == {1: {101}}
        assert store.get_stored(7).associations == {2: {200}}
        assert store.calls.bulk_save == [[5, 7]]
        assert result.saved == 2
        assert result.attempts == 1
        assert result.unresolved == []

    @pytest.mark.asyncio
    async def test_bulk_load_completeness(self, engine, store):
        """One bulk query, then single reads only for IDs it missed."""
        events = [_event("ADD", cid, 1, 100) for cid in (5, 7, 9, 5, 7)]

        result = await engine.process_events(events)

        assert store.calls.bulk_get == [[5, 7, 9]]
        assert store.calls.get_by_id == [7, 9]
        assert result.impacted == [5, 7, 9]
        assert result.unresolved == [9]

    @pytest.mark.asyncio
    async def test_no_fallback_when_bulk_complete(self, store):
        store.bulk_hidden.clear()
        engine = BatchLinkEngine(store)

        await engine.process_events([_event("ADD", 5, 1, 1), _event("ADD", 7, 1, 2)])

        assert store.calls.get_by_id == []

    @pytest.mark.asyncio
    async def test_unresolved_container_skipped(self, engine, store):
        """Events for a missing container have no effect and nothing is saved."""
        result = await engine.process_events([_event("ADD", 8, 1, 100)])

        assert result.unresolved == [8]
        assert result.applied == 0
        assert result.attempts == 0
        assert store.calls.bulk_save == []

    @pytest.mark.asyncio
    async def test_versions_bumped(self, engine, store):
        await engine.process_events([_event("ADD", 5, 1, 100)])
        await engine.process_events([_event("ADD", 5, 1, 101)])

        stored = store.get_stored(5)
        assert stored.version == 2
        assert stored.members_for(1) == frozenset({100, 101})

    @pytest.mark.asyncio
    async def test_idempotent_replay(self, engine, store):
        events = [_event("ADD", 5, 1, 100), _event("REMOVE", 5, 1, 101)]

        await engine.process_events(events)
        await engine.process_events(events)

        assert store.get_stored(5).associations == {1: {100}}

    @pytest.mark.asyncio
    async def test_conflict_converges(self, engine, store):
        """A conflict on attempt 1 is reloaded and replayed on attempt 2."""
        store.add_before_save_hook(lambda s: s.concurrent_update(5, user_id=3, member_id=300))
        events = [
            _event("ADD", 5, 1, 100),
            _event("ADD", 5, 1, 101),
            _event("REMOVE", 5, 1, 100),
        ]

        result = await engine.process_events(events)

        assert result.attempts == 2
        assert result.conflict_retries == 1
        assert len(store.calls.bulk_get) == 2
        stored = store.get_stored(5)
        assert stored.members_for(1) == frozenset({101})
        assert stored.members_for(3) == frozenset({300})

    @pytest.mark.asyncio
    async def test_conflict_on_same_key_replays_in_order(self, engine, store):
        """A concurrent ADD of a member the batch removes ends up removed."""
        store.add_before_save_hook(lambda s: s.concurrent_update(5, user_id=1, member_id=100))

        await engine.process_events([_event("REMOVE", 5, 1, 100)])

        assert store.get_stored(5).members_for(1) == frozenset()
        assert 1 not in store.get_stored(5).associations

    @pytest.mark.asyncio
    async def test_async_hook_supported(self, engine, store):
        async def hook(s):
            s.concurrent_update(5, user_id=4, member_id=400)

        store.add_before_save_hook(hook)

        result = await engine.process_events([_event("ADD", 5, 1, 1)])

        assert result.attempts == 2
        assert store.get_stored(5).members_for(4) == frozenset({400})

    @pytest.mark.asyncio
    async def test_retry_bound(self, engine, store):
        """Persistent conflicts raise after max_attempts saves."""
        store.add_before_save_hook(lambda s: s.concurrent_update(5, user_id=3, member_id=300), times=5)

        with pytest.raises(ConflictRetriesExhausted) as exc_info:
            await engine.process_events([_event("ADD", 5, 1, 100)])

        assert len(store.calls.bulk_save) == 3
        assert exc_info.value.container_ids == [5]
        assert isinstance(exc_info.value.__cause__, OptimisticConflictError)
        assert store.get_stored(5).members_for(1) == frozenset()

    @pytest.mark.asyncio
    async def test_single_attempt(self, store):
        engine = BatchLinkEngine(store, max_attempts=1)
        store.add_before_save_hook(lambda s: s.concurrent_update(5, user_id=3, member_id=300))

        with pytest.raises(ConflictRetriesExhausted):
            await engine.process_events([_event("ADD", 5, 1, 100)])

        assert len(store.calls.bulk_save) == 1

    @pytest.mark.asyncio
    async def test_store_error_not_retried(self, engine, store):
        store.fail_next_save(StoreError("disk full"))

        with pytest.raises(StoreError, match="disk full"):
            await engine.process_events([_event("ADD", 5, 1, 100)])

        assert len(store.calls.bulk_save) == 1

    def test_invalid_max_attempts(self, store):
        with pytest.raises(ValueError):
            BatchLinkEngine(store, max_attempts=0)

    @pytest.mark.asyncio
    async def test_process_batch_drops_malformed(self, engine, store):
        records = _records(
            {"userId": 1, "containerId": 5, "memberId": 100},
            b"not json",
            {"userId": 1, "containerId": 5},
            {"userId": 1, "containerId": 5, "memberId": 101, "action": "UPDATE"},
        )

        result = await engine.process_batch(records)

        assert result.received == 4
        assert result.dropped == 2
        assert result.events == 2
        assert store.get_stored(5).members_for(1) == frozenset({100, 101})

    @pytest.mark.asyncio
    async def test_process_batch_container_ids(self, store):
        store.bulk_hidden.clear()
        engine = BatchLinkEngine(store)

        await engine.process_batch(_records({"userId": 1, "containerIds": [5, 7], "memberId": 100}))

        assert store.get_stored(5).members_for(1) == frozenset({100})
        assert store.get_stored(7).members_for(1) == frozenset({100})

    @pytest.mark.asyncio
    async def test_empty_batch(self, engine, store):
        result = await engine.process_batch([])

        assert result.received == 0
        assert store.calls.bulk_get == []


class RacingContainerStore(SqliteContainerStore):
    """SQLite store where another writer commits just before our bulk saves."""

    def __init__(self, db, races=1):
        super().__init__(db)
        self.races = races

    async def bulk_save(self, containers):
        if self.races:
            self.races -= 1
            current = await self.get_by_id(5)
            current.associations.setdefault(3, set()).add(300)
            current.version += 1
            await self.upsert(current)
        await super().bulk_save(containers)


class TestBatchLinkEngineSqlite:
    """Conflict handling against the SQLite store."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    async def _store(self, data_dir, races):
        store = RacingContainerStore(SqliteDatabase(data_dir, "budget", wal_mode=False), races=races)
        await store.upsert(Container(container_id=5))
        return store

    @pytest.mark.asyncio
    async def test_concurrent_writer_survives_replay(self, data_dir):
        store = await self._store(data_dir, races=1)
        engine = BatchLinkEngine(store, kind="budget")

        result = await engine.process_events(
            [_event("ADD", 5, 1, 100), _event("ADD", 5, 1, 101), _event("REMOVE", 5, 1, 100)]
        )

        assert result.attempts == 2
        assert result.saved == 1
        stored = await store.get_by_id(5)
        assert stored.members_for(1) == frozenset({101})
        assert stored.members_for(3) == frozenset({300})
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted_leave_row_untouched(self, data_dir):
        store = await self._store(data_dir, races=3)
        engine = BatchLinkEngine(store, kind="budget", max_attempts=3)

        with pytest.raises(ConflictRetriesExhausted):
            await engine.process_events([_event("ADD", 5, 1, 100)])

        stored = await store.get_by_id(5)
        assert stored.members_for(1) == frozenset()
        assert stored.members_for(3) == frozenset({300})
        assert stored.version == 3


class TestCollectImpactedIds:
    """Tests for collect_impacted_ids."""

    def test_first_seen_order(self):
        events = [_event("ADD", cid, 1, 1) for cid in (9, 3, 9, 1, 3)]
        assert collect_impacted_ids(events) == [9, 3, 1]
