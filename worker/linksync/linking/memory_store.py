"""
In-memory container store for testing.

Behaves like SqliteContainerStore (copies in and out, version check on
save) and adds hooks to script the situations the engine must survive:
- a concurrent writer touching a row between load and save
- a bulk read that misses rows a single-row read still finds
- storage failures

This is test-only code, changes don't affect production.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Union

from .store import Container, OptimisticConflictError

logger = logging.getLogger(__name__)

SaveHook = Callable[["InMemoryContainerStore"], Union[None, Awaitable[None]]]


@dataclass
class StoreCalls:
    """Recorded store calls (testing helper)."""

    bulk_get: list[list[int]] = field(default_factory=list)
    get_by_id: list[int] = field(default_factory=list)
    bulk_save: list[list[int]] = field(default_factory=list)


class InMemoryContainerStore:
    """Dictionary-backed ContainerStore.

    Example:
        >>> store = InMemoryContainerStore()
        >>> store.put(Container(container_id=5))
        >>> store.add_before_save_hook(lambda s: s.concurrent_update(5, user_id=9, member_id=900))
        >>> # the next bulk_save that includes container 5 raises OptimisticConflictError
    """

    def __init__(self, containers: list[Container] | None = None) -> None:
        self._rows: dict[int, Container] = {}
        self._hooks: list[SaveHook] = []
        self._save_errors: list[Exception] = []
        self.bulk_hidden: set[int] = set()
        self.calls = StoreCalls()
        for container in containers or []:
            self.put(container)

    # ContainerStore protocol

    async def bulk_get_by_ids(self, ids: list[int]) -> list[Container]:
        self.calls.bulk_get.append(list(ids))
        return [
            self._rows[cid].copy()
            for cid in ids
            if cid in self._rows and cid not in self.bulk_hidden
        ]

    async def get_by_id(self, container_id: int) -> Container | None:
        self.calls.get_by_id.append(container_id)
        row = self._rows.get(container_id)
        return row.copy() if row else None

    async def bulk_save(self, containers: list[Container]) -> None:
        self.calls.bulk_save.append([c.container_id for c in containers])

        if self._hooks:
            hook = self._hooks.pop(0)
            result = hook(self)
            if inspect.isawaitable(result):
                await result

        if self._save_errors:
            raise self._save_errors.pop(0)

        stale = [
            c.container_id
            for c in containers
            if c.container_id not in self._rows
            or self._rows[c.container_id].version != c.version
        ]
        if stale:
            raise OptimisticConflictError(f"Stale containers: {stale}", container_ids=stale)

        for container in containers:
            container.version += 1
            self._rows[container.container_id] = container.copy()

    # Testing helpers

    def put(self, container: Container) -> None:
        """Insert or overwrite a row without a version check."""
        self._rows[container.container_id] = container.copy()

    def get_stored(self, container_id: int) -> Container | None:
        """Current stored row (copy)."""
        row = self._rows.get(container_id)
        return row.copy() if row else None

    def concurrent_update(self, container_id: int, user_id: int, member_id: int) -> None:
        """Simulate another writer linking a member and bumping the version."""
        row = self._rows[container_id]
        if row.associations is None:
            row.associations = {}
        row.associations.setdefault(user_id, set()).add(member_id)
        row.version += 1

    def add_before_save_hook(self, hook: SaveHook, times: int = 1) -> None:
        """Run hook at the start of the next `times` bulk_save calls."""
        self._hooks.extend([hook] * times)

    def fail_next_save(self, error: Exception) -> None:
        """Make the next bulk_save raise error (after hooks run)."""
        self._save_errors.append(error)
