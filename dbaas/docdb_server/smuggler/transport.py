"""
Transport protocol between the smuggler and a document store.

The pipelines never touch a store directly. A transport hides whether the
store lives in this process (EmbeddedTransport) or behind the HTTP API
(RemoteTransport in remote.py), so both paths share one implementation.

Probe contract:
    Before streaming, pipelines call probe() and inspect the tagged result.
    "Cannot connect" and "database missing" are distinct statuses and are
    reported before any partial work is done.

Invariants:
    - Reads are ascending by etag with an exclusive lower bound
    - put_documents is put-by-key, delete_documents is delete-if-exists
    - Transports never create databases

How to change safely:
    - Protocol changes require updating every implementation
    - Keep HTTP and embedded behavior identical; tests run both
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import ConnectivityError, DatabaseNotFoundError
from ..etag import Etag
from ..store.documents import DocumentRecord, DocumentStore
from ..store.tombstones import Tombstone
from .continuation import CONTINUATION_PREFIX
from .state import LastEtagsInfo

if TYPE_CHECKING:
    from .dumpfile import DumpDocument

logger = logging.getLogger(__name__)


class ProbeStatus(Enum):
    OK = "ok"
    CONNECTION_FAILED = "connection_failed"
    DATABASE_NOT_FOUND = "database_not_found"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of checking that a store is reachable and the database exists.

    Attributes:
        status: Tagged outcome
        database: Database that was probed
        server: Server URL or data directory
        detail: Failure detail, if any
    """

    status: ProbeStatus
    database: str
    server: str
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is ProbeStatus.OK

    def raise_for_status(self) -> None:
        """Convert a failed probe into the matching error."""
        if self.status is ProbeStatus.CONNECTION_FAILED:
            raise ConnectivityError(self.detail or "unreachable", url=self.server)
        if self.status is ProbeStatus.DATABASE_NOT_FOUND:
            raise DatabaseNotFoundError(self.database, server=self.server)


@runtime_checkable
class SmugglerTransport(Protocol):
    """Protocol for reaching a store's database.

    Example:
        >>> transport = EmbeddedTransport(store, "northwind")
        >>> await transport.connect()
        >>> (await transport.probe()).raise_for_status()
        >>> docs = await transport.read_documents(Etag.EMPTY, limit=128)
    """

    database: str

    @property
    @abstractmethod
    def server(self) -> str:
        """Server URL or data directory, used in error messages."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Acquire resources. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def probe(self) -> ProbeResult:
        """Check connectivity and database existence without raising."""
        ...

    @abstractmethod
    async def get_max_batch_size(self) -> int:
        """Server-enforced batch ceiling."""
        ...

    @abstractmethod
    async def get_last_etags(self) -> LastEtagsInfo:
        """Current document and tombstone high-water etags."""
        ...

    @abstractmethod
    async def read_documents(
        self, since: Etag, limit: int, max_etag: Etag | None = None
    ) -> list[DocumentRecord]: ...

    @abstractmethod
    async def read_tombstones(
        self, since: Etag, limit: int, max_etag: Etag | None = None
    ) -> list[Tombstone]: ...

    @abstractmethod
    async def put_documents(self, documents: Sequence[DumpDocument]) -> int:
        """Put each document by key; the store assigns new etags.

        Raises:
            InvalidDocumentError: If the store rejects a document
        """
        ...

    @abstractmethod
    async def delete_documents(self, keys: Sequence[str]) -> int:
        """Delete-if-exists; returns how many keys existed."""
        ...

    @abstractmethod
    async def purge_tombstones(self, cutoff: Etag) -> int:
        """Administrative purge of tombstones with etag <= cutoff."""
        ...

    @abstractmethod
    async def load_continuation(self, token: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def save_continuation(self, token: str, state: dict[str, Any]) -> None: ...


class EmbeddedTransport:
    """Transport over a DocumentStore in this process."""

    def __init__(self, store: DocumentStore, database: str) -> None:
        self.store = store
        self.database = database

    @property
    def server(self) -> str:
        return str(self.store.data_dir)

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def probe(self) -> ProbeResult:
        if await self.store.database_exists(self.database):
            return ProbeResult(ProbeStatus.OK, self.database, self.server)
        return ProbeResult(
            ProbeStatus.DATABASE_NOT_FOUND,
            self.database,
            self.server,
            detail=f"Database not found: {self.database}",
        )

    async def get_max_batch_size(self) -> int:
        return self.store.max_batch_size

    async def get_last_etags(self) -> LastEtagsInfo:
        return LastEtagsInfo(
            last_docs_etag=await self.store.last_document_etag(self.database),
            last_docs_delete_etag=await self.store.tombstones(self.database).last_etag(),
        )

    async def read_documents(
        self, since: Etag, limit: int, max_etag: Etag | None = None
    ) -> list[DocumentRecord]:
        return await self.store.read_documents_since(self.database, since, limit, max_etag)

    async def read_tombstones(
        self, since: Etag, limit: int, max_etag: Etag | None = None
    ) -> list[Tombstone]:
        return await self.store.tombstones(self.database).range_since(since, limit, max_etag)

    async def put_documents(self, documents: Sequence[DumpDocument]) -> int:
        records = await self.store.put_many(
            self.database, [(d.key, d.payload, d.metadata) for d in documents]
        )
        return len(records)

    async def delete_documents(self, keys: Sequence[str]) -> int:
        return await self.store.delete_many(self.database, keys)

    async def purge_tombstones(self, cutoff: Etag) -> int:
        return await self.store.tombstones(self.database).purge_up_to(cutoff)

    async def load_continuation(self, token: str) -> dict[str, Any] | None:
        return await self.store.get_system_document(self.database, CONTINUATION_PREFIX + token)

    async def save_continuation(self, token: str, state: dict[str, Any]) -> None:
        await self.store.put_system_document(self.database, CONTINUATION_PREFIX + token, state)


def create_transport(
    location: str,
    database: str,
    timeout: float = 30.0,
    max_batch_size: int = 1024,
) -> SmugglerTransport:
    """Factory function to create a transport from a URL or data directory.

    Args:
        location: http(s) URL of a server, or a local data directory
        database: Database name
        timeout: Request timeout for remote servers
        max_batch_size: Batch ceiling for a local data directory

    Returns:
        RemoteTransport for URLs, EmbeddedTransport otherwise
    """
    from .remote import RemoteTransport

    if location.startswith(("http://", "https://")):
        return RemoteTransport(location, database, timeout=timeout)
    return EmbeddedTransport(DocumentStore(location, max_batch_size=max_batch_size), database)
