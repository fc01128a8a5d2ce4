"""
Single-event linking: keeps a member's own container references in step.

When a container is deleted or an expense moves to another container, the
expense's cached reference set must follow. These corrections arrive one at
a time; each touches exactly one member row and relies on that row's own
transaction, so there is no batching and no optimistic retry loop.

Invariants:
    - Same merge rule as the batch engine (mutator.merge_ids)
    - One record is one transaction on one member row
    - A failing record is logged and reported; it never stops the next one
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from ..stream.base import StreamRecord
from .events import LinkAction, LinkEvent, MalformedEventError, parse_record
from .mutator import merge_ids
from .store import StoreError

logger = logging.getLogger(__name__)


class MemberLinkStore(Protocol):
    """Per-member container references (see SqliteMemberLinkStore)."""

    @abstractmethod
    async def get_links(self, member_id: int) -> set[int]:
        ...

    @abstractmethod
    async def modify_links(
        self,
        member_id: int,
        user_id: int,
        mutate: Callable[[set[int]], set[int]],
    ) -> set[int]:
        ...


@dataclass
class SingleLinkResult:
    """Outcome of one single-event correction.

    Attributes:
        success: Whether the member row was updated
        record: Source record, if the event came from the transport
        events: Parsed events (a record with containerIds yields several)
        links: Member's container references after the change
        error: Error message if failed
    """

    success: bool
    record: StreamRecord | None = None
    events: list[LinkEvent] = field(default_factory=list)
    links: set[int] = field(default_factory=set)
    error: str | None = None


def _repoint(refs: set[int], event: LinkEvent) -> set[int]:
    if (
        event.previous_container_id is not None
        and not event.action.removes
        and event.previous_container_id != event.container_id
    ):
        refs = merge_ids(refs, event.previous_container_id, LinkAction.REMOVE)
    return merge_ids(refs, event.container_id, event.action)


class SingleEventLinker:
    """Applies one link event to one member's reference row.

    Example:
        >>> linker = SingleEventLinker(member_store, kind="category")
        >>> result = await linker.handle_record(record)
        >>> result.links
        {7}
    """

    def __init__(
        self,
        store: MemberLinkStore,
        kind: str = "container",
        strict_actions: bool = False,
    ) -> None:
        self.store = store
        self.kind = kind
        self.strict_actions = strict_actions

    async def apply(self, events: list[LinkEvent]) -> set[int]:
        """Fold events for one member into its row in a single transaction.

        Raises:
            ValueError: If events are empty or target different members
            StoreError: If the row cannot be updated
        """
        if not events:
            raise ValueError("No events to apply")

        first = events[0]
        if any(e.member_id != first.member_id or e.user_id != first.user_id for e in events):
            raise ValueError("Single-event linking needs one member and user per call")

        def mutate(refs: set[int]) -> set[int]:
            for event in events:
                refs = _repoint(refs, event)
            return refs

        return await self.store.modify_links(first.member_id, first.user_id, mutate)

    async def handle_record(self, record: StreamRecord) -> SingleLinkResult:
        """Parse and apply one record, containing any failure."""
        try:
            events = parse_record(record, strict_actions=self.strict_actions)
        except MalformedEventError as e:
            logger.warning(
                "Dropping malformed single link event",
                extra={"kind": self.kind, "position": str(record.position), "error": str(e)},
            )
            return SingleLinkResult(success=False, record=record, error=str(e))

        try:
            links = await self.apply(events)
        except (StoreError, ValueError) as e:
            logger.error(
                "Failed to apply single link event",
                extra={
                    "kind": self.kind,
                    "position": str(record.position),
                    "member_id": events[0].member_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            return SingleLinkResult(success=False, record=record, events=events, error=str(e))

        logger.debug(
            "Applied single link event",
            extra={
                "kind": self.kind,
                "member_id": events[0].member_id,
                "links": sorted(links),
            },
        )
        return SingleLinkResult(success=True, record=record, events=events, links=links)
