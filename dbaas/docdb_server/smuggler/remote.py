"""
HTTP transport to a remote DocDB server.

Talks to the aiohttp API in api/http_server.py with an httpx async client.

Error mapping:
    httpx.TransportError                     -> ConnectivityError
    404 {"error_code": "DATABASE_NOT_FOUND"} -> DatabaseNotFoundError
    422 {"error_code": "INVALID_DOCUMENT"}   -> InvalidDocumentError
    400 {"error_code": "FORMAT_ERROR"}       -> FormatError
    anything else >= 400                     -> SmugglerError

Invariants:
    - No retries here; callers own the retry policy
    - probe() never raises for connection or not-found failures

How to change safely:
    - Keep routes in sync with api/http_server.py
    - New response fields must be optional on this side
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from ..errors import ConnectivityError, DatabaseNotFoundError, FormatError, SmugglerError
from ..etag import Etag
from ..store.documents import DocumentRecord, InvalidDocumentError
from ..store.tombstones import Tombstone
from .state import LastEtagsInfo
from .transport import ProbeResult, ProbeStatus

if TYPE_CHECKING:
    from .dumpfile import DumpDocument

logger = logging.getLogger(__name__)


class RemoteTransport:
    """Transport over the HTTP API of a DocDB server.

    Example:
        >>> transport = RemoteTransport("http://localhost:8081", "northwind")
        >>> await transport.connect()
        >>> result = await transport.probe()
    """

    def __init__(
        self,
        url: str,
        database: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            url: Server base URL
            database: Database name
            timeout: Per-request timeout in seconds
            client: Pre-built client (not closed by this transport)
        """
        self.url = url.rstrip("/")
        self.database = database
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def server(self) -> str:
        return self.url

    @property
    def _db_path(self) -> str:
        return f"/v1/databases/{quote(self.database, safe='')}"

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.url, timeout=self.timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            raise SmugglerError("Transport is not connected", code="NOT_CONNECTED")
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ConnectivityError(str(e) or type(e).__name__, url=self.url) from e

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        if response.status_code >= 400:
            self._raise_for_response(response)
        return response.json()

    def _raise_for_response(self, response: httpx.Response) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        error_code = body.get("error_code")
        message = body.get("error") or response.text or f"HTTP {response.status_code}"

        if error_code == "DATABASE_NOT_FOUND":
            raise DatabaseNotFoundError(self.database, server=self.url)
        if error_code == "INVALID_DOCUMENT":
            raise InvalidDocumentError(body.get("key"), body.get("reason") or message)
        if error_code == "FORMAT_ERROR":
            raise FormatError(body.get("value", message))
        raise SmugglerError(
            f"Remote request failed ({response.status_code}): {message}",
            code=error_code or "REMOTE_ERROR",
            details={"url": str(response.url), "status": response.status_code},
        )

    async def probe(self) -> ProbeResult:
        try:
            response = await self._send("GET", f"{self._db_path}/stats")
        except ConnectivityError as e:
            return ProbeResult(
                ProbeStatus.CONNECTION_FAILED,
                self.database,
                self.url,
                detail=str(e.__cause__ or e.message),
            )

        if response.status_code == 404:
            return ProbeResult(
                ProbeStatus.DATABASE_NOT_FOUND,
                self.database,
                self.url,
                detail=f"Database not found: {self.database}",
            )
        if response.status_code >= 400:
            self._raise_for_response(response)
        return ProbeResult(ProbeStatus.OK, self.database, self.url)

    async def get_stats(self) -> dict[str, Any]:
        return await self._request("GET", f"{self._db_path}/stats")

    async def get_max_batch_size(self) -> int:
        return int((await self.get_stats())["max_batch_size"])

    async def get_last_etags(self) -> LastEtagsInfo:
        stats = await self.get_stats()
        return LastEtagsInfo(
            last_docs_etag=Etag.parse(stats["last_document_etag"]),
            last_docs_delete_etag=Etag.parse(stats["last_tombstone_etag"]),
        )

    @staticmethod
    def _range_params(since: Etag, limit: int, max_etag: Etag | None) -> dict[str, Any]:
        params: dict[str, Any] = {"since": str(since), "limit": limit}
        if max_etag is not None:
            params["max"] = str(max_etag)
        return params

    async def read_documents(
        self, since: Etag, limit: int, max_etag: Etag | None = None
    ) -> list[DocumentRecord]:
        body = await self._request(
            "GET", f"{self._db_path}/docs", params=self._range_params(since, limit, max_etag)
        )
        return [DocumentRecord.from_dict(d) for d in body["docs"]]

    async def read_tombstones(
        self, since: Etag, limit: int, max_etag: Etag | None = None
    ) -> list[Tombstone]:
        body = await self._request(
            "GET",
            f"{self._db_path}/tombstones",
            params=self._range_params(since, limit, max_etag),
        )
        return [Tombstone.from_dict(t) for t in body["tombstones"]]

    async def put_documents(self, documents: Sequence[DumpDocument]) -> int:
        payload = {
            "docs": [
                {"key": d.key, "payload": d.payload, "metadata": d.metadata} for d in documents
            ]
        }
        body = await self._request("POST", f"{self._db_path}/docs", json=payload)
        return int(body["written"])

    async def delete_documents(self, keys: Sequence[str]) -> int:
        body = await self._request("POST", f"{self._db_path}/deletes", json={"keys": list(keys)})
        return int(body["deleted"])

    async def purge_tombstones(self, cutoff: Etag) -> int:
        body = await self._request(
            "POST",
            f"/v1/admin/databases/{quote(self.database, safe='')}/purge-tombstones",
            params={"docEtag": str(cutoff)},
        )
        return int(body["purged"])

    async def load_continuation(self, token: str) -> dict[str, Any] | None:
        body = await self._request(
            "GET", f"{self._db_path}/continuations/{quote(token, safe='')}"
        )
        return body.get("state")

    async def save_continuation(self, token: str, state: dict[str, Any]) -> None:
        await self._request(
            "PUT",
            f"{self._db_path}/continuations/{quote(token, safe='')}",
            json={"state": state},
        )
