"""
API module for the DocDB server.

This module provides the external interface:
- HTTP server (JSON API used by RemoteTransport and for administrative purges)

Invariants:
    - No endpoint creates a database
    - Range reads are capped by the server batch ceiling

How to change safely:
    - Add new endpoints, don't change the shape of existing ones
    - Keep endpoints in sync with smuggler/remote.py
"""

from .http_server import create_http_app, start_http_server

__all__ = [
    "create_http_app",
    "start_http_server",
]
