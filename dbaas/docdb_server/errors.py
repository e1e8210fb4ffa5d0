"""
Error types for the DocDB smuggler.

This module defines the error taxonomy surfaced by export and import runs:
- SmugglerError: Base exception
- ConnectivityError: Source/target unreachable (callers decide on retries)
- DatabaseNotFoundError: Target database missing (never auto-created)
- CorruptInputError: Malformed dump file or state file
- ApplyError: A single document/deletion failed to apply
- FormatError: Malformed etag string

Invariants:
    - All errors inherit from SmugglerError
    - Errors carry enough context (key, etag, file) to support a re-run
    - The engine performs no silent retries
"""

from __future__ import annotations

from typing import Any


class SmugglerError(Exception):
    """Base exception for all smuggler errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SMUGGLER_ERROR"
        self.details = details or {}


class ConnectivityError(SmugglerError):
    """Source or target store could not be reached.

    Raised when:
    - The remote server refuses the connection
    - A request times out
    - The connection drops mid-transfer
    """

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(
            f"Smuggler encountered a connection problem: {message}",
            code="CONNECTIVITY_ERROR",
            details={"url": url},
        )
        self.url = url


class DatabaseNotFoundError(SmugglerError):
    """The named database does not exist.

    Migration never creates a database implicitly.
    """

    def __init__(self, database: str, server: str | None = None) -> None:
        if server:
            message = (
                "Smuggler does not support database creation "
                f"(database '{database}' on server '{server}' must exist "
                "before running Smuggler)."
            )
        else:
            message = f"Database not found: {database}"
        super().__init__(
            message,
            code="DATABASE_NOT_FOUND",
            details={"database": database, "server": server},
        )
        self.database = database
        self.server = server


class CorruptInputError(SmugglerError):
    """A dump or state file could not be parsed."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(
            message if path is None else f"{message} (file: {path})",
            code="CORRUPT_INPUT",
            details={"path": path},
        )
        self.path = path


class ApplyError(SmugglerError):
    """A document or deletion failed to apply to the target.

    The current file is aborted; already-applied items are kept and the
    file is re-applied on the next run.

    Attributes:
        key: Document key that failed
        etag: Source etag of the failed item
        path: Dump file being imported
    """

    def __init__(
        self,
        message: str,
        key: str | None = None,
        etag: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="APPLY_ERROR",
            details={"key": key, "etag": etag, "path": path},
        )
        self.key = key
        self.etag = etag
        self.path = path


class FormatError(SmugglerError, ValueError):
    """An etag string is malformed."""

    def __init__(self, value: Any) -> None:
        super().__init__(
            f"Invalid etag: {value!r}",
            code="FORMAT_ERROR",
            details={"value": str(value)},
        )
        self.value = value
