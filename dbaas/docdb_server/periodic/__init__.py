"""
Periodic export module for DocDB.

This module handles:
- An owned periodic timer (start / defer / stop)
- The periodic export scheduler (full and incremental runs)
- Optional upload of finished export files to S3

Invariants:
    - One export run at a time per scheduler
    - Tombstones are purged only after their export is durable

How to change safely:
    - Test restarts against the persisted status before changing the schedule logic
"""

from .s3 import ExportUploader
from .scheduler import (
    STATUS_DOCUMENT_KEY,
    PeriodicExportSetup,
    PeriodicExportStatus,
    PeriodicScheduler,
)
from .timer import PeriodicTimer

__all__ = [
    "ExportUploader",
    "PeriodicExportSetup",
    "PeriodicExportStatus",
    "PeriodicScheduler",
    "PeriodicTimer",
    "STATUS_DOCUMENT_KEY",
]
