"""
Smuggler module for DocDB - export and import of database content.

This module handles:
- Batch size governing against the server ceiling
- Export checkpoint state (IncrementalExport.state.json)
- The dump file format (streaming writer and reader)
- Continuation tracking for resumable imports
- Embedded and HTTP transports
- The export and import pipelines

Invariants:
    - Exports are ascending by etag and never stamp made-up etags
    - Imports consume files in creation order and apply idempotently
    - Connectivity and missing-database failures surface before any work

How to change safely:
    - Keep the dump format backward compatible
    - Run the integration tests against both transports
"""

from .continuation import ContinuationState, ContinuationTracker
from .dumpfile import DumpDeletion, DumpDocument, DumpKind, DumpReader, DumpWriter, open_dump
from .exporter import ExportPhase, ExportPipeline, ExportResult
from .importer import ImportPipeline, ImportResult
from .options import BatchSizeGovernor, ExportOptions, ImportOptions, SmugglerOptions
from .remote import RemoteTransport
from .state import (
    STATE_FILE_NAME,
    LastEtagsInfo,
    OperationState,
    read_last_etags_from_file,
    write_last_etags_to_file,
)
from .transport import (
    EmbeddedTransport,
    ProbeResult,
    ProbeStatus,
    SmugglerTransport,
    create_transport,
)

__all__ = [
    "BatchSizeGovernor",
    "ContinuationState",
    "ContinuationTracker",
    "DumpDeletion",
    "DumpDocument",
    "DumpKind",
    "DumpReader",
    "DumpWriter",
    "EmbeddedTransport",
    "ExportOptions",
    "ExportPhase",
    "ExportPipeline",
    "ExportResult",
    "ImportOptions",
    "ImportPipeline",
    "ImportResult",
    "LastEtagsInfo",
    "OperationState",
    "ProbeResult",
    "ProbeStatus",
    "RemoteTransport",
    "STATE_FILE_NAME",
    "SmugglerOptions",
    "SmugglerTransport",
    "create_transport",
    "open_dump",
    "read_last_etags_from_file",
    "write_last_etags_to_file",
]
