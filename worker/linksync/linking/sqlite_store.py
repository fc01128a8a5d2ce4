"""
SQLite stores for containers and member link references.

One SQLite file per container kind holds:
- containers: the owning side, with per-user member sets and a version
- member_links: each member's own cached references to containers of this
  kind, maintained by the single-event linker

Invariants:
    - bulk_save is one BEGIN IMMEDIATE transaction; any stale version rolls it all back
    - Every saved container gets version + 1
    - Empty user sets and empty member reference sets are never written

How to change safely:
    - Schema changes must be backward compatible (add columns with defaults)
    - Keep associations_json keys as strings; JSON objects cannot have int keys
    - Use transactions for all write operations

Table schema:
    containers:
        - container_id INTEGER PRIMARY KEY
        - name TEXT
        - version INTEGER
        - associations_json TEXT ({"<user_id>": [member_id, ...]})
        - updated_at INTEGER (Unix ms)

    member_links:
        - member_id INTEGER PRIMARY KEY
        - user_id INTEGER
        - container_ids_json TEXT ([container_id, ...])
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from .store import Container, OptimisticConflictError, StoreError

logger = logging.getLogger(__name__)

# Stay under SQLITE_MAX_VARIABLE_NUMBER on older builds
_MAX_IN_PARAMS = 900


class MemberOwnershipError(StoreError):
    """Member link row belongs to a different user."""

    pass


def _encode_associations(associations: dict[int, set[int]] | None) -> str:
    return json.dumps(
        {str(user): sorted(members) for user, members in (associations or {}).items() if members},
        sort_keys=True,
    )


def _decode_associations(raw: str | None) -> dict[int, set[int]]:
    if not raw:
        return {}
    return {int(user): set(members) for user, members in json.loads(raw).items() if members}


class SqliteDatabase:
    """Connection handling shared by the container and member-link stores.

    Each operation opens its own connection; SQLite serializes writers via
    BEGIN IMMEDIATE and the busy timeout.
    """

    def __init__(
        self,
        data_dir: str,
        kind: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the database handle.

        Args:
            data_dir: Directory for SQLite database files
            kind: Container kind (category, budget, payment_method)
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.kind = kind
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._initialized = False

    @property
    def db_path(self) -> Path:
        # Sanitize kind to prevent path traversal
        safe_kind = "".join(c for c in self.kind if c.isalnum() or c in "-_")
        return self.data_dir / f"{safe_kind}.db"

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use.

        Raises:
            StoreError: If the database cannot be opened
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS containers (
                container_id INTEGER PRIMARY KEY,
                name TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                associations_json TEXT NOT NULL DEFAULT '{}',
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS member_links (
                member_id INTEGER PRIMARY KEY,
                user_id INTEGER NOT NULL,
                container_ids_json TEXT NOT NULL DEFAULT '[]',
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_member_links_user ON member_links(user_id);
        """)
        logger.info(f"Initialized {self.kind} database: {self.db_path}")


class SqliteContainerStore:
    """ContainerStore backed by the containers table of one kind's database.

    Example:
        >>> store = SqliteContainerStore(SqliteDatabase("/var/lib/linksync", "budget"))
        >>> await store.upsert(Container(container_id=5, name="Groceries"))
        >>> [c.container_id for c in await store.bulk_get_by_ids([5, 6])]
        [5]
    """

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    @staticmethod
    def _row_to_container(row: sqlite3.Row) -> Container:
        return Container(
            container_id=row["container_id"],
            version=row["version"],
            associations=_decode_associations(row["associations_json"]),
            name=row["name"],
        )

    async def bulk_get_by_ids(self, ids: list[int]) -> list[Container]:
        """Fetch existing containers among ids."""
        if not ids:
            return []

        containers: list[Container] = []
        try:
            with self.db.connection() as conn:
                for start in range(0, len(ids), _MAX_IN_PARAMS):
                    chunk = ids[start:start + _MAX_IN_PARAMS]
                    placeholders = ",".join("?" * len(chunk))
                    cursor = conn.execute(
                        f"SELECT * FROM containers WHERE container_id IN ({placeholders})",
                        chunk,
                    )
                    containers.extend(self._row_to_container(row) for row in cursor.fetchall())
        except sqlite3.Error as e:
            raise StoreError(f"Bulk read failed: {e}") from e

        return containers

    async def get_by_id(self, container_id: int) -> Container | None:
        """Fetch one container or None."""
        try:
            with self.db.connection() as conn:
                row = conn.execute(
                    "SELECT * FROM containers WHERE container_id = ?",
                    (container_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Read of container {container_id} failed: {e}") from e

        return self._row_to_container(row) if row else None

    async def bulk_save(self, containers: list[Container]) -> None:
        """Save containers in one transaction with a version check per row.

        Raises:
            OptimisticConflictError: If any row is missing or has moved on
            StoreError: For other SQLite failures
        """
        if not containers:
            return

        now = int(time.time() * 1000)
        try:
            with self.db.connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    stale = []
                    for container in containers:
                        cursor = conn.execute(
                            """
                            UPDATE containers
                            SET associations_json = ?, name = ?, version = version + 1, updated_at = ?
                            WHERE container_id = ? AND version = ?
                            """,
                            (
                                _encode_associations(container.associations),
                                container.name,
                                now,
                                container.container_id,
                                container.version,
                            ),
                        )
                        if cursor.rowcount != 1:
                            stale.append(container.container_id)

                    if stale:
                        conn.execute("ROLLBACK")
                        raise OptimisticConflictError(
                            f"Stale containers: {stale}", container_ids=stale
                        )

                    conn.execute("COMMIT")

                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            raise StoreError(f"Bulk save failed: {e}") from e

        for container in containers:
            container.version += 1

        logger.debug(
            "Saved containers",
            extra={"kind": self.db.kind, "container_ids": [c.container_id for c in containers]},
        )

    async def upsert(self, container: Container) -> None:
        """Insert or replace a container without a version check (seeding)."""
        try:
            with self.db.connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO containers
                        (container_id, name, version, associations_json, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        container.container_id,
                        container.name,
                        container.version,
                        _encode_associations(container.associations),
                        int(time.time() * 1000),
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Upsert of container {container.container_id} failed: {e}") from e

    async def delete(self, container_id: int) -> bool:
        """Delete a container; True if a row was removed."""
        try:
            with self.db.connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM containers WHERE container_id = ?", (container_id,)
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StoreError(f"Delete of container {container_id} failed: {e}") from e


class SqliteMemberLinkStore:
    """A member's own references to containers of one kind.

    Each row is read-modified-written inside a single BEGIN IMMEDIATE
    transaction, which is all the single-event linker needs for atomicity.
    """

    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    async def get_links(self, member_id: int) -> set[int]:
        """Container IDs referenced by a member (empty if no row)."""
        try:
            with self.db.connection() as conn:
                row = conn.execute(
                    "SELECT container_ids_json FROM member_links WHERE member_id = ?",
                    (member_id,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Read of member {member_id} failed: {e}") from e

        return set(json.loads(row["container_ids_json"])) if row else set()

    async def modify_links(
        self,
        member_id: int,
        user_id: int,
        mutate: Callable[[set[int]], set[int]],
    ) -> set[int]:
        """Atomically transform a member's container references.

        Args:
            member_id: Member whose row is changed
            user_id: Owner; must match an existing row's owner
            mutate: Receives the current set, returns the new one

        Returns:
            The stored set after the change (empty means the row was deleted)

        Raises:
            MemberOwnershipError: If the row belongs to another user
            StoreError: For SQLite failures
        """
        now = int(time.time() * 1000)
        try:
            with self.db.connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT user_id, container_ids_json FROM member_links WHERE member_id = ?",
                        (member_id,),
                    ).fetchone()

                    if row and row["user_id"] != user_id:
                        conn.execute("ROLLBACK")
                        raise MemberOwnershipError(
                            f"Member {member_id} belongs to user {row['user_id']}, not {user_id}"
                        )

                    current = set(json.loads(row["container_ids_json"])) if row else set()
                    updated = mutate(set(current))

                    if updated:
                        conn.execute(
                            """
                            INSERT OR REPLACE INTO member_links
                                (member_id, user_id, container_ids_json, updated_at)
                            VALUES (?, ?, ?, ?)
                            """,
                            (member_id, user_id, json.dumps(sorted(updated)), now),
                        )
                    elif row:
                        conn.execute("DELETE FROM member_links WHERE member_id = ?", (member_id,))

                    conn.execute("COMMIT")
                    return updated

                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            raise StoreError(f"Update of member {member_id} failed: {e}") from e
