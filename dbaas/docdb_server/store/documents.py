"""
Per-database SQLite document store.

This module manages one SQLite file per named database, holding:
- Documents keyed by string key, each stamped with the etag of its last write
- Tombstones for deleted keys (see tombstones.py)
- System documents for non-replicated bookkeeping
- The etag counters

The store is the collaborator the smuggler reads from and writes to. It
assigns every etag itself; callers never choose one.

Invariants:
    - One SQLite file per database (db_<name>.db)
    - Databases are created explicitly; nothing here creates one implicitly
    - Every write (put or delete) draws the next change counter, so etags are
      strictly increasing per database across documents and tombstones
    - Each DocumentStore instance bumps the restart counter once per database
    - A put clears the key's tombstone in the same transaction
    - System documents never receive etags and are never exported

How to change safely:
    - Schema changes must be backward compatible (CREATE ... IF NOT EXISTS)
    - All writes go through BEGIN IMMEDIATE so counter reads are serialized
    - Keep etags in compact hex form so SQL order equals etag order

Table schema:
    counters:
        - name TEXT PRIMARY KEY ('restarts' | 'changes')
        - value INTEGER

    documents:
        - key TEXT PRIMARY KEY
        - etag TEXT (compact hex, UNIQUE)
        - payload_json TEXT
        - metadata_json TEXT
        - last_modified INTEGER (Unix ms)

    system_documents:
        - key TEXT PRIMARY KEY
        - value_json TEXT
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import DatabaseNotFoundError
from ..etag import Etag
from .tombstones import TOMBSTONE_SCHEMA, TombstoneLedger

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 1024

# Reserved metadata owned by the store; stripped from caller-supplied metadata.
RESERVED_METADATA = frozenset({"@id", "@etag", "Last-Modified"})


class InvalidDocumentError(ValueError):
    """A document was rejected by the store.

    Attributes:
        key: Offending document key
        reason: Why the document was rejected
    """

    def __init__(self, key: Any, reason: str) -> None:
        super().__init__(f"Invalid document {key!r}: {reason}")
        self.key = key
        self.reason = reason


@dataclass
class DocumentRecord:
    """A committed document as stored.

    Attributes:
        key: Document key
        etag: Etag of the write that produced this version
        payload: Document body
        metadata: Document metadata (e.g. @collection)
        last_modified: Write timestamp (Unix ms)
    """

    key: str
    etag: Etag
    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    last_modified: int = 0

    @property
    def collection(self) -> str | None:
        return self.metadata.get("@collection")

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "etag": str(self.etag),
            "payload": self.payload,
            "metadata": self.metadata,
            "last_modified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DocumentRecord:
        return cls(
            key=data["key"],
            etag=Etag.parse(data["etag"]),
            payload=data.get("payload") or {},
            metadata=data.get("metadata") or {},
            last_modified=int(data.get("last_modified", 0)),
        )


def validate_document(key: Any, payload: Any, metadata: Any = None) -> None:
    """Check a document before it is written.

    Raises:
        InvalidDocumentError: If key, payload or metadata is unacceptable
    """
    if not isinstance(key, str) or not key:
        raise InvalidDocumentError(key, "key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidDocumentError(key, f"key exceeds {MAX_KEY_LENGTH} characters")
    if not isinstance(payload, dict):
        raise InvalidDocumentError(key, "payload must be a JSON object")
    if metadata is not None and not isinstance(metadata, dict):
        raise InvalidDocumentError(key, "metadata must be a JSON object")


def _to_json(key: str, value: Any) -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError) as e:
        raise InvalidDocumentError(key, f"not JSON serializable: {e}") from e


def _row_to_record(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        key=row["key"],
        etag=Etag.parse(row["etag"]),
        payload=json.loads(row["payload_json"]),
        metadata=json.loads(row["metadata_json"]),
        last_modified=row["last_modified"],
    )


class DocumentStore:
    """Per-database SQLite store for documents, tombstones and system documents.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = DocumentStore("/var/lib/docdb")
        >>> await store.create_database("northwind")
        >>> record = await store.put("northwind", "users/1", {"name": "Ann"})
        >>> await store.delete("northwind", "users/1")
        True
    """

    def __init__(
        self,
        data_dir: str,
        max_batch_size: int = 1024,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the document store.

        Args:
            data_dir: Directory for SQLite database files
            max_batch_size: Server-enforced ceiling on items per batch
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.max_batch_size = max_batch_size
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._opened: set[str] = set()
        self._lock = asyncio.Lock()

    def _get_db_path(self, database: str) -> Path:
        """Get database file path for a database name."""
        # Sanitize name to prevent path traversal
        safe_name = "".join(c for c in database if c.isalnum() or c in "-_")
        return self.data_dir / f"db_{safe_name}.db"

    @contextmanager
    def connection(self, database: str, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a connection to a database.

        Args:
            database: Database name
            create: Whether to create the database file if missing

        Yields:
            SQLite connection (autocommit; use BEGIN IMMEDIATE for writes)

        Raises:
            DatabaseNotFoundError: If database doesn't exist and create=False
        """
        db_path = self._get_db_path(database)

        if not create and not db_path.exists():
            raise DatabaseNotFoundError(database)

        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            if create:
                self._create_schema(conn)
            if database not in self._opened:
                self._bump_restarts(conn, database)

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS counters (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO counters (name, value) VALUES ('restarts', 0);
            INSERT OR IGNORE INTO counters (name, value) VALUES ('changes', 0);

            CREATE TABLE IF NOT EXISTS documents (
                key TEXT PRIMARY KEY,
                etag TEXT NOT NULL UNIQUE,
                payload_json TEXT NOT NULL DEFAULT '{}',
                metadata_json TEXT NOT NULL DEFAULT '{}',
                last_modified INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_documents_etag ON documents(etag);

            CREATE TABLE IF NOT EXISTS system_documents (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
            """
            + TOMBSTONE_SCHEMA
        )

    def _bump_restarts(self, conn: sqlite3.Connection, database: str) -> None:
        """Start a new etag generation for this instance."""
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute("UPDATE counters SET value = value + 1 WHERE name = 'restarts'")
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        self._opened.add(database)

    def _next_etag(self, conn: sqlite3.Connection) -> Etag:
        """Draw the next etag. Caller must hold a write transaction."""
        conn.execute("UPDATE counters SET value = value + 1 WHERE name = 'changes'")
        counters = dict(conn.execute("SELECT name, value FROM counters").fetchall())
        return Etag(restarts=counters["restarts"], changes=counters["changes"])

    def tombstones(self, database: str) -> TombstoneLedger:
        """Tombstone ledger of a database."""
        return TombstoneLedger(self, database)

    # ------------------------------------------------------------------
    # Database lifecycle
    # ------------------------------------------------------------------

    async def create_database(self, database: str) -> None:
        """Create a database (no-op if it already exists)."""
        async with self._lock:
            with self.connection(database, create=True):
                logger.info(f"Initialized database: {database}")

    async def database_exists(self, database: str) -> bool:
        return self._get_db_path(database).exists()

    async def delete_database(self, database: str) -> bool:
        """Delete a database file and its WAL side files."""
        async with self._lock:
            db_path = self._get_db_path(database)
            if not db_path.exists():
                return False
            for suffix in ("", "-wal", "-shm"):
                Path(f"{db_path}{suffix}").unlink(missing_ok=True)
            self._opened.discard(database)
            logger.info(f"Deleted database: {database}")
            return True

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _put_in_transaction(
        self,
        conn: sqlite3.Connection,
        ledger: TombstoneLedger,
        key: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None,
        now: int,
    ) -> DocumentRecord:
        clean_metadata = {k: v for k, v in (metadata or {}).items() if k not in RESERVED_METADATA}
        payload_json = _to_json(key, payload)
        metadata_json = _to_json(key, clean_metadata)

        etag = self._next_etag(conn)
        conn.execute(
            """
            INSERT OR REPLACE INTO documents (key, etag, payload_json, metadata_json, last_modified)
            VALUES (?, ?, ?, ?, ?)
            """,
            (key, etag.compact(), payload_json, metadata_json, now),
        )
        ledger.clear(conn, key)

        return DocumentRecord(
            key=key,
            etag=etag,
            payload=payload,
            metadata=clean_metadata,
            last_modified=now,
        )

    async def put(
        self,
        database: str,
        key: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> DocumentRecord:
        """Write a document, superseding any previous version.

        Args:
            database: Database name
            key: Document key
            payload: Document body
            metadata: Optional metadata (reserved keys are ignored)

        Returns:
            The stored record with its new etag

        Raises:
            InvalidDocumentError: If the document is rejected
            DatabaseNotFoundError: If the database does not exist
        """
        records = await self.put_many(database, [(key, payload, metadata)])
        return records[0]

    async def put_many(
        self,
        database: str,
        items: Iterable[tuple[str, dict[str, Any], dict[str, Any] | None]],
    ) -> list[DocumentRecord]:
        """Write a batch of (key, payload, metadata) in a single transaction.

        Every item is validated before anything is written.
        """
        items = list(items)
        for key, payload, metadata in items:
            validate_document(key, payload, metadata)

        now = int(time.time() * 1000)
        ledger = self.tombstones(database)
        records: list[DocumentRecord] = []

        with self.connection(database) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for key, payload, metadata in items:
                    records.append(
                        self._put_in_transaction(conn, ledger, key, payload, metadata, now)
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        if records:
            logger.debug(
                "Put documents",
                extra={
                    "database": database,
                    "count": len(records),
                    "last_etag": str(records[-1].etag),
                },
            )
        return records

    async def delete(self, database: str, key: str) -> bool:
        """Delete a document, leaving a tombstone.

        Returns:
            True if deleted, False if the key did not exist
        """
        return await self.delete_many(database, [key]) == 1

    async def delete_many(self, database: str, keys: Iterable[str]) -> int:
        """Delete-if-exists for a batch of keys in a single transaction.

        Returns:
            Number of documents actually deleted
        """
        now = int(time.time() * 1000)
        ledger = self.tombstones(database)
        deleted = 0

        with self.connection(database) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for key in keys:
                    row = conn.execute(
                        "SELECT metadata_json FROM documents WHERE key = ?", (key,)
                    ).fetchone()
                    if row is None:
                        continue

                    conn.execute("DELETE FROM documents WHERE key = ?", (key,))
                    collection = json.loads(row["metadata_json"]).get("@collection")
                    ledger.record(conn, key, self._next_etag(conn), collection, now)
                    deleted += 1

                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        if deleted:
            logger.debug("Deleted documents", extra={"database": database, "count": deleted})
        return deleted

    async def get(self, database: str, key: str) -> DocumentRecord | None:
        with self.connection(database) as conn:
            row = conn.execute("SELECT * FROM documents WHERE key = ?", (key,)).fetchone()
            return _row_to_record(row) if row else None

    async def read_documents_since(
        self,
        database: str,
        etag: Etag,
        limit: int,
        max_etag: Etag | None = None,
    ) -> list[DocumentRecord]:
        """Documents with etag > `etag` (and <= `max_etag`), ascending.

        Args:
            database: Database name
            etag: Exclusive lower bound
            limit: Maximum number of documents
            max_etag: Inclusive upper bound (None = unbounded)
        """
        if limit <= 0:
            return []

        sql = "SELECT * FROM documents WHERE etag > ?"
        params: list[Any] = [etag.compact()]
        if max_etag is not None:
            sql += " AND etag <= ?"
            params.append(max_etag.compact())
        sql += " ORDER BY etag LIMIT ?"
        params.append(limit)

        with self.connection(database) as conn:
            return [_row_to_record(row) for row in conn.execute(sql, params).fetchall()]

    async def last_document_etag(self, database: str) -> Etag:
        """Current document high-water etag (Etag.EMPTY for an empty database)."""
        with self.connection(database) as conn:
            row = conn.execute("SELECT MAX(etag) FROM documents").fetchone()
            return Etag.parse(row[0]) if row and row[0] else Etag.EMPTY

    async def get_stats(self, database: str) -> dict[str, Any]:
        """Get statistics for a database.

        Returns:
            Dictionary with counts, last etags and the batch ceiling
        """
        ledger = self.tombstones(database)
        with self.connection(database) as conn:
            documents = conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

        return {
            "documents": documents,
            "tombstones": await ledger.count(),
            "last_document_etag": str(await self.last_document_etag(database)),
            "last_tombstone_etag": str(await ledger.last_etag()),
            "max_batch_size": self.max_batch_size,
        }

    # ------------------------------------------------------------------
    # System documents
    # ------------------------------------------------------------------

    async def get_system_document(self, database: str, key: str) -> dict[str, Any] | None:
        with self.connection(database) as conn:
            row = conn.execute(
                "SELECT value_json FROM system_documents WHERE key = ?", (key,)
            ).fetchone()
            return json.loads(row["value_json"]) if row else None

    async def put_system_document(self, database: str, key: str, value: dict[str, Any]) -> None:
        """Store bookkeeping data; it gets no etag and is never exported."""
        value_json = _to_json(key, value)
        with self.connection(database) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO system_documents (key, value_json, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, value_json, int(time.time() * 1000)),
            )

    def get_db_path(self, database: str) -> Path:
        return self._get_db_path(database)
