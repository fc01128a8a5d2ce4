"""
Container model and store protocol.

A container (budget, category, payment method) owns a per-user set of
member (expense) IDs and a version used for optimistic concurrency.

Invariants:
    - A member ID appears at most once per (container, user)
    - A user key is never stored with an empty set
    - Stores hand out copies; mutating a loaded container never touches storage
    - bulk_save is all-or-nothing: one stale version fails the whole save

How to change safely:
    - Every store implementation must bump the version on save
    - Keep OptimisticConflictError distinct from other StoreErrors; only it is retried
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


class StoreError(Exception):
    """Container storage failed."""

    pass


class OptimisticConflictError(StoreError):
    """A concurrent writer changed a container since it was loaded.

    Attributes:
        container_ids: Containers whose stored version no longer matched
    """

    def __init__(self, message: str, container_ids: list[int] | None = None) -> None:
        super().__init__(message)
        self.container_ids = container_ids or []


class ConflictRetriesExhausted(OptimisticConflictError):
    """Conflicts persisted through every allowed save attempt."""

    pass


@dataclass
class Container:
    """A container row.

    Attributes:
        container_id: Container identifier
        version: Optimistic lock token, incremented on every save
        associations: user ID -> member IDs (None is treated as empty)
        name: Display name
    """

    container_id: int
    version: int = 0
    associations: dict[int, set[int]] | None = field(default_factory=dict)
    name: str | None = None

    def members_for(self, user_id: int) -> frozenset[int]:
        """Members linked for one user (empty if none)."""
        if not self.associations:
            return frozenset()
        return frozenset(self.associations.get(user_id, ()))

    def copy(self) -> Container:
        """Deep copy, detached from the original's sets."""
        return Container(
            container_id=self.container_id,
            version=self.version,
            associations={user: set(members) for user, members in (self.associations or {}).items()},
            name=self.name,
        )


@runtime_checkable
class ContainerStore(Protocol):
    """Storage interface consumed by the linking engine.

    Implementations:
        - SqliteContainerStore: production, one SQLite file per container kind
        - InMemoryContainerStore: tests, with call counters and conflict hooks
    """

    @abstractmethod
    async def bulk_get_by_ids(self, ids: list[int]) -> list[Container]:
        """Fetch the containers that exist among ids, in one query.

        Missing IDs are simply absent from the result.
        """
        ...

    @abstractmethod
    async def get_by_id(self, container_id: int) -> Container | None:
        """Fetch one container, or None if it does not exist."""
        ...

    @abstractmethod
    async def bulk_save(self, containers: list[Container]) -> None:
        """Persist containers atomically.

        Each container's version must equal the stored version; on success
        the stored and in-memory versions are both incremented.

        Raises:
            OptimisticConflictError: If any stored version differs or the row vanished
            StoreError: For other storage failures
        """
        ...
