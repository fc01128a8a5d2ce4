"""
Unit tests for the in-memory transport.

Tests cover:
- Connection lifecycle and partitioning
- Batch polling bounds
- Commit, rewind and redelivery
- Testing helpers
"""

import asyncio

import pytest

from worker.linksync.stream.base import (
    EventTransport,
    StreamConnectionError,
    StreamError,
    StreamPos,
    StreamRecord,
    highest_positions,
)
from worker.linksync.stream.memory import InMemoryTransport


class TestInMemoryTransport:
    """Tests for InMemoryTransport."""

    @pytest.fixture
    def transport(self):
        """Create a fresh transport."""
        return InMemoryTransport(num_partitions=4)

    def test_satisfies_protocol(self, transport):
        assert isinstance(transport, EventTransport)

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, transport):
        """Test connection lifecycle."""
        assert not transport.is_connected

        await transport.connect()
        assert transport.is_connected

        await transport.close()
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self, transport):
        with pytest.raises(StreamConnectionError):
            await transport.publish("t", "k", b"v")

    @pytest.mark.asyncio
    async def test_poll_requires_subscription(self, transport):
        await transport.connect()

        with pytest.raises(StreamError):
            await transport.poll_batch(10, timeout_ms=0)

    @pytest.mark.asyncio
    async def test_same_key_same_partition(self, transport):
        await transport.connect()

        positions = [await transport.publish("t", "budget-5", b"x") for _ in range(5)]

        assert len({p.partition for p in positions}) == 1
        assert [p.offset for p in positions] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_poll_respects_max_records(self, transport):
        await transport.connect()
        for i in range(10):
            await transport.publish("t", f"k{i}", b"x")
        await transport.subscribe("t", "g")

        first = await transport.poll_batch(4, timeout_ms=0)
        second = await transport.poll_batch(100, timeout_ms=0)

        assert len(first) == 4
        assert len(second) == 6
        assert await transport.poll_batch(100, timeout_ms=0) == []

    @pytest.mark.asyncio
    async def test_per_key_order_preserved(self, transport):
        await transport.connect()
        for i in range(5):
            await transport.publish_json("t", "same", {"n": i})
        await transport.subscribe("t", "g")

        records = await transport.poll_batch(10, timeout_ms=0)

        assert [r.value_json()["n"] for r in records] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_rewind_redelivers_uncommitted(self, transport):
        await transport.connect()
        for i in range(3):
            await transport.publish("t", "k", str(i).encode())
        await transport.subscribe("t", "g")

        first = await transport.poll_batch(2, timeout_ms=0)
        await transport.commit(first)
        second = await transport.poll_batch(10, timeout_ms=0)
        await transport.rewind()
        again = await transport.poll_batch(10, timeout_ms=0)

        assert [r.value for r in second] == [b"2"]
        assert [r.value for r in again] == [b"2"]
        assert transport.rewind_count == 1

    @pytest.mark.asyncio
    async def test_resubscribe_resumes_from_commit(self, transport):
        await transport.connect()
        for i in range(4):
            await transport.publish("t", "k", str(i).encode())
        await transport.subscribe("t", "g")
        await transport.commit(await transport.poll_batch(3, timeout_ms=0))

        await transport.close()
        await transport.connect()
        await transport.subscribe("t", "g")

        records = await transport.poll_batch(10, timeout_ms=0)
        assert [r.value for r in records] == [b"3"]
        assert transport.get_lag("t", "g") == 1

    @pytest.mark.asyncio
    async def test_groups_are_independent(self, transport):
        await transport.connect()
        await transport.publish("t", "k", b"v")

        await transport.subscribe("t", "g1")
        await transport.commit(await transport.poll_batch(10, timeout_ms=0))

        assert transport.get_lag("t", "g1") == 0
        assert transport.get_lag("t", "g2") == 1

    @pytest.mark.asyncio
    async def test_poll_waits_for_new_records(self, transport):
        await transport.connect()
        await transport.subscribe("t", "g")

        async def publish_later():
            await asyncio.sleep(0.05)
            await transport.publish("t", "k", b"late")

        task = asyncio.create_task(publish_later())
        records = await transport.poll_batch(10, timeout_ms=2000)
        await task

        assert [r.value for r in records] == [b"late"]

    @pytest.mark.asyncio
    async def test_poll_times_out_empty(self, transport):
        await transport.connect()
        await transport.subscribe("t", "g")

        assert await transport.poll_batch(10, timeout_ms=10) == []

    @pytest.mark.asyncio
    async def test_helpers(self, transport):
        await transport.connect()
        await transport.publish("t", "a", b"1")
        await transport.publish("t", "b", b"2")
        await transport.subscribe("t", "g")
        records = await transport.poll_batch(10, timeout_ms=0)
        await transport.commit(records)

        assert transport.get_record_count("t") == 2
        assert transport.get_record_count("missing") == 0
        assert sum(transport.get_committed("t", "g").values()) == 2
        assert transport.commit_count == 1


class TestHighestPositions:
    """Tests for highest_positions."""

    def test_highest_per_partition(self):
        def rec(partition, offset):
            return StreamRecord(
                key="k", value=b"", position=StreamPos("t", partition, offset, timestamp_ms=0)
            )

        highest = highest_positions([rec(0, 3), rec(1, 1), rec(0, 7), rec(0, 5)])

        assert {tp: pos.offset for tp, pos in highest.items()} == {("t", 0): 7, ("t", 1): 1}
