"""
Tombstone ledger for deleted documents.

A tombstone records that a key was deleted so incremental exports can carry
the deletion to another store. Tombstones live next to the documents in the
database file and draw their etags from the same change counter.

Lifecycle:
    delete(key)        -> record(key, etag, collection)
    put(key) again     -> clear(key)          (re-creation supersedes deletion)
    export confirmed   -> purge_up_to(cutoff) (etag <= cutoff removed)

Invariants:
    - At most one tombstone per key; recording again replaces it
    - range_since() is strictly ascending by etag with an exclusive lower bound
    - purge_up_to(E) never touches a tombstone with etag > E
    - Purge is idempotent

How to change safely:
    - record()/clear() run inside the caller's transaction; never commit there
    - Keep etags stored in compact hex form so SQL order equals etag order

Table schema:
    tombstones:
        - key TEXT PRIMARY KEY
        - etag TEXT (compact hex, UNIQUE)
        - collection TEXT
        - deleted_at INTEGER (Unix ms)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..etag import Etag

if TYPE_CHECKING:
    from .documents import DocumentStore

logger = logging.getLogger(__name__)


TOMBSTONE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS tombstones (
        key TEXT PRIMARY KEY,
        etag TEXT NOT NULL UNIQUE,
        collection TEXT,
        deleted_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_tombstones_etag ON tombstones(etag);
"""


@dataclass(frozen=True)
class Tombstone:
    """Marker for a deleted document.

    Attributes:
        key: Deleted document key
        etag: Etag assigned to the deletion
        collection: Collection of the deleted document, if known
        deleted_at: Deletion timestamp (Unix ms)
    """

    key: str
    etag: Etag
    collection: str | None
    deleted_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "etag": str(self.etag),
            "collection": self.collection,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Tombstone:
        return cls(
            key=data["key"],
            etag=Etag.parse(data["etag"]),
            collection=data.get("collection"),
            deleted_at=int(data.get("deleted_at", 0)),
        )


def _row_to_tombstone(row: sqlite3.Row) -> Tombstone:
    return Tombstone(
        key=row["key"],
        etag=Etag.parse(row["etag"]),
        collection=row["collection"],
        deleted_at=row["deleted_at"],
    )


class TombstoneLedger:
    """Deletion markers of one database, queryable by etag range.

    Example:
        >>> ledger = store.tombstones("northwind")
        >>> pending = await ledger.range_since(Etag.EMPTY, limit=100)
        >>> removed = await ledger.purge_up_to(pending[-1].etag)
    """

    def __init__(self, store: DocumentStore, database: str) -> None:
        self._store = store
        self.database = database

    def record(
        self,
        conn: sqlite3.Connection,
        key: str,
        etag: Etag,
        collection: str | None = None,
        deleted_at: int | None = None,
    ) -> Tombstone:
        """Record a tombstone inside the caller's open transaction.

        An existing tombstone for the same key is replaced.
        """
        tombstone = Tombstone(
            key=key,
            etag=etag,
            collection=collection,
            deleted_at=deleted_at or int(time.time() * 1000),
        )
        conn.execute(
            """
            INSERT OR REPLACE INTO tombstones (key, etag, collection, deleted_at)
            VALUES (?, ?, ?, ?)
            """,
            (key, etag.compact(), collection, tombstone.deleted_at),
        )
        return tombstone

    def clear(self, conn: sqlite3.Connection, key: str) -> bool:
        """Drop the pending tombstone for key, if any (caller's transaction)."""
        cursor = conn.execute("DELETE FROM tombstones WHERE key = ?", (key,))
        if cursor.rowcount:
            logger.debug(
                "Cleared tombstone on re-create",
                extra={"database": self.database, "key": key},
            )
        return cursor.rowcount > 0

    async def get(self, key: str) -> Tombstone | None:
        with self._store.connection(self.database) as conn:
            row = conn.execute("SELECT * FROM tombstones WHERE key = ?", (key,)).fetchone()
            return _row_to_tombstone(row) if row else None

    async def range_since(
        self,
        low: Etag,
        limit: int,
        max_etag: Etag | None = None,
    ) -> list[Tombstone]:
        """Tombstones with low < etag (<= max_etag), ascending by etag.

        Args:
            low: Exclusive lower bound
            limit: Maximum number of tombstones returned
            max_etag: Inclusive upper bound (None = unbounded)
        """
        if limit <= 0:
            return []

        sql = "SELECT * FROM tombstones WHERE etag > ?"
        params: list[Any] = [low.compact()]
        if max_etag is not None:
            sql += " AND etag <= ?"
            params.append(max_etag.compact())
        sql += " ORDER BY etag LIMIT ?"
        params.append(limit)

        with self._store.connection(self.database) as conn:
            return [_row_to_tombstone(row) for row in conn.execute(sql, params).fetchall()]

    async def purge_up_to(self, cutoff: Etag) -> int:
        """Remove every tombstone with etag <= cutoff.

        Returns:
            Number of tombstones removed
        """
        with self._store.connection(self.database) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "DELETE FROM tombstones WHERE etag <= ?",
                    (cutoff.compact(),),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        removed = cursor.rowcount
        logger.info(
            "Purged tombstones",
            extra={"database": self.database, "cutoff": str(cutoff), "removed": removed},
        )
        return removed

    async def count(self) -> int:
        with self._store.connection(self.database) as conn:
            return conn.execute("SELECT COUNT(*) FROM tombstones").fetchone()[0]

    async def last_etag(self) -> Etag:
        """Highest tombstone etag, or Etag.EMPTY when there are none."""
        with self._store.connection(self.database) as conn:
            row = conn.execute("SELECT MAX(etag) FROM tombstones").fetchone()
            return Etag.parse(row[0]) if row and row[0] else Etag.EMPTY
