"""
Store module for DocDB - the document database the smuggler moves data between.

This module handles:
- Per-database SQLite files with documents and system documents
- Etag assignment (restart counter + change counter)
- The tombstone ledger of deleted keys

Invariants:
    - Every write receives a new, strictly higher etag
    - A re-created key never keeps a tombstone
    - Databases are never created implicitly

How to change safely:
    - Use transactions for all multi-statement operations
    - Verify etag ordering with concurrent-writer tests
"""

from .documents import (
    DocumentRecord,
    DocumentStore,
    InvalidDocumentError,
    validate_document,
)
from .tombstones import Tombstone, TombstoneLedger

__all__ = [
    "DocumentRecord",
    "DocumentStore",
    "InvalidDocumentError",
    "validate_document",
    "Tombstone",
    "TombstoneLedger",
]
