"""
Association mutator: folds link events into in-memory containers.

Invariants:
    - Events are applied in the order given, never regrouped by container
    - REMOVE is set difference; ADD and UPDATE are set union
    - An emptied user set is deleted, never stored as {}
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .events import LinkAction, LinkEvent
from .store import Container

logger = logging.getLogger(__name__)


def merge_ids(current: Iterable[int] | None, item: int, action: LinkAction) -> set[int]:
    """Apply one action to an ID set and return the result as a new set."""
    merged = set(current or ())
    if action.removes:
        merged.discard(item)
    else:
        merged.add(item)
    return merged


def apply_event(containers: dict[int, Container], event: LinkEvent) -> bool:
    """Apply one event to the container map.

    Returns:
        False if the event's container is not in the map, True otherwise
    """
    container = containers.get(event.container_id)
    if container is None:
        return False

    if container.associations is None:
        container.associations = {}

    members = merge_ids(container.associations.get(event.user_id), event.member_id, event.action)
    if members:
        container.associations[event.user_id] = members
    else:
        container.associations.pop(event.user_id, None)
    return True


def apply_events(containers: dict[int, Container], events: list[LinkEvent]) -> int:
    """Apply events in order; returns how many hit a loaded container."""
    applied = 0
    for event in events:
        if apply_event(containers, event):
            applied += 1
    logger.debug("Applied link events", extra={"applied": applied, "total": len(events)})
    return applied
