"""
Periodic export scheduler.

Runs exports of one database into a local folder on a wall-clock schedule:

    tick
     ├─ run in progress?            -> drop the tick
     ├─ full interval elapsed since
     │  status.last_full_backup
     │  (or never ran a full)?      -> full export (resets the incremental baseline)
     └─ incremental interval set?   -> incremental export (no file if no changes)

After a run's file and state file are durable (and uploaded, when S3 is
configured) tombstones up to the run's LastDocDeleteEtag are purged and the
status is saved as the system document "periodic-export/status".

Invariants:
    - One run at a time; ticks arriving during a run are dropped, not queued
    - The full/incremental decision uses the persisted status, so a restart
      never causes back-to-back full exports
    - Tombstones are purged only after the run that exported them is durable

How to change safely:
    - Keep status keys stable; they are read back after upgrades
    - Never purge past the exported LastDocDeleteEtag
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..config import PeriodicExportConfig, S3Config
from ..etag import Etag
from ..store.documents import DocumentStore
from ..smuggler.exporter import ExportPipeline, ExportResult
from ..smuggler.options import ExportOptions, SmugglerOptions
from ..smuggler.state import state_file_path
from ..smuggler.transport import EmbeddedTransport
from .s3 import ExportUploader
from .timer import PeriodicTimer

logger = logging.getLogger(__name__)

STATUS_DOCUMENT_KEY = "periodic-export/status"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PeriodicExportSetup:
    """Periodic export settings for one database.

    Attributes:
        database: Database to export
        local_folder: Directory receiving dump files and the state file
        interval_ms: Incremental export interval (None = incremental disabled)
        full_backup_interval_ms: Full export interval (None = full disabled)
        s3_bucket: Bucket to upload finished files to (None = no upload)
        s3_prefix: Key prefix for uploads
    """

    database: str
    local_folder: str
    interval_ms: int | None = None
    full_backup_interval_ms: int | None = None
    s3_bucket: str | None = None
    s3_prefix: str = "exports"

    def __post_init__(self) -> None:
        if self.interval_ms is None and self.full_backup_interval_ms is None:
            raise ValueError("At least one of interval_ms or full_backup_interval_ms is required")

    @classmethod
    def from_config(
        cls, periodic: PeriodicExportConfig, s3: S3Config | None = None
    ) -> PeriodicExportSetup:
        return cls(
            database=periodic.database,
            local_folder=periodic.local_folder,
            interval_ms=periodic.interval_ms,
            full_backup_interval_ms=periodic.full_backup_interval_ms,
            s3_bucket=s3.bucket if s3 else None,
            s3_prefix=s3.export_prefix if s3 else "exports",
        )

    @property
    def tick_interval_ms(self) -> int:
        return min(i for i in (self.interval_ms, self.full_backup_interval_ms) if i is not None)


@dataclass
class PeriodicExportStatus:
    """Persisted progress of the periodic exporter.

    Attributes:
        last_backup: When the last export (of any kind) finished
        last_full_backup: When the last full export finished
        last_docs_etag: Document checkpoint of the last export
        last_docs_deletion_etag: Deletion checkpoint of the last export
    """

    last_backup: datetime | None = None
    last_full_backup: datetime | None = None
    last_docs_etag: Etag = Etag.EMPTY
    last_docs_deletion_etag: Etag = Etag.EMPTY

    def to_dict(self) -> dict[str, Any]:
        return {
            "LastBackup": self.last_backup.isoformat() if self.last_backup else None,
            "LastFullBackup": self.last_full_backup.isoformat() if self.last_full_backup else None,
            "LastDocsEtag": str(self.last_docs_etag),
            "LastDocsDeletionEtag": str(self.last_docs_deletion_etag),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PeriodicExportStatus:
        def _ts(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            last_backup=_ts(data.get("LastBackup")),
            last_full_backup=_ts(data.get("LastFullBackup")),
            last_docs_etag=Etag.parse_optional(data.get("LastDocsEtag")) or Etag.EMPTY,
            last_docs_deletion_etag=(
                Etag.parse_optional(data.get("LastDocsDeletionEtag")) or Etag.EMPTY
            ),
        )


class PeriodicScheduler:
    """Owns a timer and runs periodic exports of one database.

    Example:
        >>> scheduler = PeriodicScheduler(store, PeriodicExportSetup(
        ...     database="northwind", local_folder="/backups", interval_ms=60_000,
        ... ))
        >>> await scheduler.start()
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        store: DocumentStore,
        setup: PeriodicExportSetup,
        uploader: ExportUploader | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.setup = setup
        self.uploader = uploader
        self.clock = clock
        self.pipeline = ExportPipeline(
            EmbeddedTransport(store, setup.database),
            SmugglerOptions(batch_size=batch_size),
        )
        self.status = PeriodicExportStatus()
        self._timer: PeriodicTimer | None = None
        self._running = False
        self._dropped_ticks = 0

    @property
    def is_running(self) -> bool:
        """Whether an export run is in progress."""
        return self._running

    @property
    def dropped_ticks(self) -> int:
        return self._dropped_ticks

    async def load_status(self) -> PeriodicExportStatus:
        data = await self.store.get_system_document(self.setup.database, STATUS_DOCUMENT_KEY)
        self.status = PeriodicExportStatus.from_dict(data) if data else PeriodicExportStatus()
        return self.status

    async def save_status(self) -> None:
        await self.store.put_system_document(
            self.setup.database, STATUS_DOCUMENT_KEY, self.status.to_dict()
        )

    async def start(self) -> None:
        """Load the persisted status and start the timer."""
        await self.load_status()
        self._timer = PeriodicTimer(
            self.setup.tick_interval_ms / 1000.0,
            name=f"periodic-export-{self.setup.database}",
        )
        self._timer.start(self.tick)
        logger.info(
            "Periodic export started",
            extra={
                "database": self.setup.database,
                "folder": self.setup.local_folder,
                "interval_ms": self.setup.interval_ms,
                "full_backup_interval_ms": self.setup.full_backup_interval_ms,
                "last_full_backup": self.status.to_dict()["LastFullBackup"],
            },
        )

    async def stop(self) -> None:
        """Stop the timer; a run in progress is allowed to finish."""
        if self._timer is not None:
            await self._timer.stop()
            self._timer = None
        if self.uploader is not None:
            await self.uploader.close()
        logger.info("Periodic export stopped", extra={"database": self.setup.database})

    def is_full_due(self, now: datetime) -> bool:
        interval = self.setup.full_backup_interval_ms
        if interval is None:
            return False
        last_full = self.status.last_full_backup
        if last_full is None:
            return True
        return now - last_full >= timedelta(milliseconds=interval)

    async def tick(self) -> ExportResult | None:
        """Run the export that is due, unless a run is already in progress."""
        if self._running:
            self._dropped_ticks += 1
            logger.warning(
                "Periodic export still running; dropping tick",
                extra={"database": self.setup.database},
            )
            return None

        self._running = True
        try:
            now = self.clock()
            if self.is_full_due(now):
                return await self.run(full=True)
            if self.setup.interval_ms is not None:
                return await self.run(full=False)
            return None
        finally:
            self._running = False

    async def run(self, full: bool) -> ExportResult:
        """Export now, then upload, purge and save status."""
        result = await self.pipeline.export_data(
            ExportOptions(to_directory=self.setup.local_folder, incremental=not full)
        )
        if result.file_path is None:
            return result

        if self.uploader is not None:
            await self.uploader.upload(
                Path(result.file_path),
                self.setup.database,
                state_path=state_file_path(self.setup.local_folder),
            )

        cutoff = result.state.last_doc_delete_etag
        if not cutoff.is_empty:
            await self.store.tombstones(self.setup.database).purge_up_to(cutoff)

        finished = self.clock()
        self.status.last_backup = finished
        if full:
            self.status.last_full_backup = finished
        self.status.last_docs_etag = result.state.last_docs_etag
        self.status.last_docs_deletion_etag = result.state.last_doc_delete_etag
        await self.save_status()

        return result
