"""
HTTP server implementation for DocDB.

This module exposes a DocumentStore over a small JSON API. It is what
RemoteTransport talks to, and it carries the administrative tombstone purge.

Routes:
    GET  /v1/health
    GET  /v1/databases/{db}/stats
    GET  /v1/databases/{db}/docs?since=&limit=&max=
    POST /v1/databases/{db}/docs                  {"docs": [{"key", "payload", "metadata"}]}
    POST /v1/databases/{db}/deletes               {"keys": [...]}
    GET  /v1/databases/{db}/tombstones?since=&limit=&max=
    POST /v1/admin/databases/{db}/purge-tombstones?docEtag=<etag>
    GET  /v1/databases/{db}/continuations/{token}
    PUT  /v1/databases/{db}/continuations/{token} {"state": {...}}

Invariants:
    - Errors are JSON {"error", "error_code"}
    - Range reads never return more than the store's max_batch_size items
    - Purge is idempotent
    - No route creates a database

How to change safely:
    - Keep routes in sync with smuggler/remote.py
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..config import HttpConfig
from ..errors import DatabaseNotFoundError, FormatError
from ..etag import Etag
from ..smuggler.continuation import CONTINUATION_PREFIX
from ..store.documents import DocumentStore, InvalidDocumentError

logger = logging.getLogger(__name__)


def create_http_app(
    store: DocumentStore,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create an HTTP application for DocDB.

    Args:
        store: Document store to serve
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    # Add routes
    app.router.add_get("/v1/health", lambda r: handle_health(r, store))
    app.router.add_get("/v1/databases/{db}/stats", lambda r: handle_stats(r, store))
    app.router.add_get("/v1/databases/{db}/docs", lambda r: handle_read_documents(r, store))
    app.router.add_post("/v1/databases/{db}/docs", lambda r: handle_put_documents(r, store))
    app.router.add_post("/v1/databases/{db}/deletes", lambda r: handle_delete_documents(r, store))
    app.router.add_get("/v1/databases/{db}/tombstones", lambda r: handle_read_tombstones(r, store))
    app.router.add_post(
        "/v1/admin/databases/{db}/purge-tombstones",
        lambda r: handle_purge_tombstones(r, store),
    )
    app.router.add_get(
        "/v1/databases/{db}/continuations/{token}", lambda r: handle_get_continuation(r, store)
    )
    app.router.add_put(
        "/v1/databases/{db}/continuations/{token}", lambda r: handle_put_continuation(r, store)
    )

    # Add CORS middleware
    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        # Add CORS headers
        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"

        return response

    app.middlewares.append(cors_middleware)

    # Add error handler
    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except DatabaseNotFoundError as e:
            return web.json_response(
                {"error": e.message, "error_code": "DATABASE_NOT_FOUND", "database": e.database},
                status=404,
            )
        except FormatError as e:
            return web.json_response(
                {"error": e.message, "error_code": "FORMAT_ERROR", "value": str(e.value)},
                status=400,
            )
        except InvalidDocumentError as e:
            return web.json_response(
                {
                    "error": str(e),
                    "error_code": "INVALID_DOCUMENT",
                    "key": e.key if isinstance(e.key, str) else None,
                    "reason": e.reason,
                },
                status=422,
            )
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.insert(0, error_middleware)

    return app


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message, "error_code": "BAD_REQUEST"}),
        content_type="application/json",
    )


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise _bad_request("Invalid JSON body")
    if not isinstance(body, dict):
        raise _bad_request("JSON body must be an object")
    return body


def _range_query(request: web.Request, store: DocumentStore) -> tuple[Etag, int, Etag | None]:
    """Parse since/limit/max, capping limit at the store's batch ceiling."""
    since = Etag.parse_optional(request.query.get("since")) or Etag.EMPTY
    max_etag = Etag.parse_optional(request.query.get("max"))
    try:
        limit = int(request.query.get("limit", store.max_batch_size))
    except ValueError:
        raise _bad_request("limit must be an integer")
    if limit <= 0:
        raise _bad_request("limit must be positive")
    return since, min(limit, store.max_batch_size), max_etag


async def handle_health(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle GET /v1/health - Health check."""
    return web.json_response({"healthy": True, "data_dir": str(store.data_dir)})


async def handle_stats(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle GET /v1/databases/{db}/stats - Counts, last etags, batch ceiling."""
    database = request.match_info["db"]
    return web.json_response(await store.get_stats(database))


async def handle_read_documents(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle GET /v1/databases/{db}/docs - Documents after an etag."""
    database = request.match_info["db"]
    since, limit, max_etag = _range_query(request, store)

    records = await store.read_documents_since(database, since, limit, max_etag)
    return web.json_response({"docs": [r.to_dict() for r in records], "count": len(records)})


async def handle_put_documents(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle POST /v1/databases/{db}/docs - Batch put."""
    database = request.match_info["db"]
    body = await _json_body(request)

    docs = body.get("docs")
    if not isinstance(docs, list):
        raise _bad_request("docs list is required")
    for doc in docs:
        if not isinstance(doc, dict):
            raise _bad_request("each doc must be an object")

    records = await store.put_many(
        database,
        [(d.get("key"), d.get("payload"), d.get("metadata")) for d in docs],
    )
    return web.json_response(
        {
            "written": len(records),
            "last_etag": str(records[-1].etag) if records else None,
        }
    )


async def handle_delete_documents(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle POST /v1/databases/{db}/deletes - Delete-if-exists for a batch of keys."""
    database = request.match_info["db"]
    body = await _json_body(request)

    keys = body.get("keys")
    if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
        raise _bad_request("keys must be a list of strings")

    deleted = await store.delete_many(database, keys)
    return web.json_response({"deleted": deleted})


async def handle_read_tombstones(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle GET /v1/databases/{db}/tombstones - Tombstones after an etag."""
    database = request.match_info["db"]
    since, limit, max_etag = _range_query(request, store)

    if not await store.database_exists(database):
        raise DatabaseNotFoundError(database)
    tombstones = await store.tombstones(database).range_since(since, limit, max_etag)
    return web.json_response(
        {"tombstones": [t.to_dict() for t in tombstones], "count": len(tombstones)}
    )


async def handle_purge_tombstones(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle POST /v1/admin/databases/{db}/purge-tombstones - Administrative purge."""
    database = request.match_info["db"]

    if "docEtag" not in request.query:
        raise _bad_request("docEtag query parameter is required")
    cutoff = Etag.parse(request.query["docEtag"])

    if not await store.database_exists(database):
        raise DatabaseNotFoundError(database)
    purged = await store.tombstones(database).purge_up_to(cutoff)
    return web.json_response({"purged": purged, "cutoff": str(cutoff)})


async def handle_get_continuation(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle GET /v1/databases/{db}/continuations/{token} - Import progress."""
    database = request.match_info["db"]
    token = request.match_info["token"]

    state = await store.get_system_document(database, CONTINUATION_PREFIX + token)
    return web.json_response({"token": token, "state": state})


async def handle_put_continuation(request: web.Request, store: DocumentStore) -> web.Response:
    """Handle PUT /v1/databases/{db}/continuations/{token} - Save import progress."""
    database = request.match_info["db"]
    token = request.match_info["token"]
    body = await _json_body(request)

    state = body.get("state")
    if not isinstance(state, dict):
        raise _bad_request("state object is required")

    await store.put_system_document(database, CONTINUATION_PREFIX + token, state)
    return web.json_response({"token": token, "saved": True})


async def start_http_server(
    store: DocumentStore,
    config: HttpConfig | None = None,
) -> web.AppRunner:
    """Start the HTTP server in the background.

    Args:
        store: Document store to serve
        config: HTTP server configuration

    Returns:
        The runner; call ``await runner.cleanup()`` to stop
    """
    config = config or HttpConfig()
    app = create_http_app(store, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")
    return runner
