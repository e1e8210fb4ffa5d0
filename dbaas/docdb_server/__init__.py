"""
DocDB Smuggler - incremental change-migration engine for a document store.

This package streams the full or incremental content of a document database
(documents and document deletions) into ordered, replayable dump files, and
replays those files into a (possibly different) database.

Architecture:
    ┌──────────────┐     ┌────────────────┐     ┌──────────────────┐
    │  Periodic    │────▶│ ExportPipeline │────▶│  Dump directory  │
    │  Scheduler   │     │                │     │  (*.full-dump,   │
    └──────────────┘     └───────┬────────┘     │  *.incremental-  │
                                 │              │  dump, state)    │
                                 ▼              └────────┬─────────┘
                        ┌─────────────────┐              │
                        │  Source store   │              ▼
                        │  (documents +   │     ┌──────────────────┐
                        │   tombstones)   │◀────│  ImportPipeline  │
                        └─────────────────┘purge└────────┬─────────┘
                                                         ▼
                                                ┌──────────────────┐
                                                │  Target store    │
                                                │  (+continuations)│
                                                └──────────────────┘

Invariants:
    - Etags are totally ordered per database; exports emit them ascending
    - Tombstones survive until a purge whose cutoff covers them
    - Re-importing with the same continuation token is a no-op
    - The server batch ceiling can shrink a requested batch, never grow it

How to change safely:
    - Dump format changes must stay readable by older importers
    - Keep every apply idempotent (put-by-key, delete-if-exists)
    - Test resume paths with crashes injected between batches

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
