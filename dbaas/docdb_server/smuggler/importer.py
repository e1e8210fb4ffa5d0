"""
Import pipeline: dump file(s) -> target store.

Applies a single dump file, or every dump file of an export directory in
creation order, to a target database.

Per file:
    1. Determine the highest etag in the file (state-file manifest, else scan)
    2. Skip the file if the continuation token already covers it
    3. Stream entries in file order; put documents by key, delete-if-exists
       for deletions, in governed batches
    4. Record the file as applied for the token

Invariants:
    - Files are consumed strictly in order; a failure stops the run there
    - Every apply is idempotent, so re-applying a file is safe
    - Progress is recorded only for fully applied files
    - Source etags order the stream; the target assigns its own etags

How to change safely:
    - Never record progress before the file's last batch is applied
    - Keep documents and deletions of one file in their serialized order
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ApplyError, SmugglerError
from ..etag import Etag, highest_etag
from ..store.documents import InvalidDocumentError
from .continuation import ContinuationTracker
from .dumpfile import DumpDeletion, DumpDocument, DumpReader, list_dump_files, scan_max_etag
from .options import BatchSizeGovernor, ImportOptions, SmugglerOptions
from .state import read_last_etags_from_file
from .transport import SmugglerTransport

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Outcome of an import run.

    Attributes:
        files_applied: Dump files applied in this run
        files_skipped: Dump files skipped as already applied
        documents: Documents put
        deletions: Deletion entries applied
        max_deletion_etag: Highest source deletion etag applied
        watermark: Continuation watermark after the run (None without a token)
        purged: Tombstones purged on the source (None if no purge ran)
        cancelled: Whether the run stopped early on request
    """

    files_applied: list[str] = field(default_factory=list)
    files_skipped: list[str] = field(default_factory=list)
    documents: int = 0
    deletions: int = 0
    max_deletion_etag: Etag = Etag.EMPTY
    watermark: Etag | None = None
    purged: int | None = None
    cancelled: bool = False


class ImportPipeline:
    """Replays dump files into a target database.

    Example:
        >>> pipeline = ImportPipeline(
        ...     EmbeddedTransport(store, "replica"),
        ...     SmugglerOptions(continuation_token="nightly"),
        ... )
        >>> result = await pipeline.import_data(ImportOptions(from_directory="/backups"))
    """

    def __init__(
        self,
        target: SmugglerTransport,
        options: SmugglerOptions | None = None,
    ) -> None:
        self.target = target
        self.options = options or SmugglerOptions()
        self._cancel = asyncio.Event()
        self._running = False

    def cancel(self) -> None:
        """Stop before the next batch; the current file is not recorded."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    async def import_data(self, options: ImportOptions) -> ImportResult:
        """Run one import session.

        A cancel() issued before the run starts stops it before the first
        file. The cancel flag is cleared when the run ends.

        Raises:
            ConnectivityError: If the target cannot be reached (before any apply)
            DatabaseNotFoundError: If the target database does not exist
            CorruptInputError: If a dump file is malformed
            ApplyError: If a document or deletion is rejected by the target
        """
        if self._running:
            raise SmugglerError("An import is already running", code="IMPORT_IN_PROGRESS")
        self._running = True

        try:
            return await self._run(options)
        finally:
            self._cancel.clear()
            self._running = False

    async def _run(self, options: ImportOptions) -> ImportResult:
        await self.target.connect()
        (await self.target.probe()).raise_for_status()
        batch_size = await BatchSizeGovernor.govern(self.options, self.target)

        token = self.options.continuation_token
        tracker = ContinuationTracker(self.target)
        result = ImportResult()

        if options.from_file is not None:
            files = [Path(options.from_file)]
            manifest: dict[str, Etag] = {}
        else:
            files = list_dump_files(options.from_directory)
            state = read_last_etags_from_file(options.from_directory)
            manifest = state.files if state else {}

        for path in files:
            if self.cancelled:
                result.cancelled = True
                break

            max_etag = manifest.get(path.name)
            if max_etag is None:
                max_etag = scan_max_etag(path)

            if await tracker.should_skip(token, path.name, max_etag):
                logger.debug(
                    "Skipping already applied dump",
                    extra={"file": path.name, "token": token, "max_etag": str(max_etag)},
                )
                result.files_skipped.append(path.name)
                continue

            completed = await self._apply_file(path, batch_size, result)
            if not completed:
                result.cancelled = True
                break

            await tracker.record_applied(token, path.name, max_etag)
            result.files_applied.append(path.name)

        if token is not None:
            result.watermark = (await tracker.get_state(token)).watermark

        if (
            options.purge_source is not None
            and not result.cancelled
            and not result.max_deletion_etag.is_empty
        ):
            result.purged = await self._purge_source(options.purge_source, result.max_deletion_etag)

        logger.info(
            "Import finished",
            extra={
                "database": self.target.database,
                "files_applied": len(result.files_applied),
                "files_skipped": len(result.files_skipped),
                "documents": result.documents,
                "deletions": result.deletions,
                "batch_size": batch_size,
                "cancelled": result.cancelled,
            },
        )
        return result

    async def _apply_file(self, path: Path, batch_size: int, result: ImportResult) -> bool:
        """Apply one dump file. Returns False if cancelled part-way."""
        docs: list[DumpDocument] = []
        deletions: list[DumpDeletion] = []

        with DumpReader(path) as reader:
            for entry in reader:
                if isinstance(entry, DumpDocument):
                    if deletions:
                        await self._flush_deletions(deletions, path, result)
                    docs.append(entry)
                    if len(docs) >= batch_size:
                        await self._flush_documents(docs, path, result)
                else:
                    if docs:
                        await self._flush_documents(docs, path, result)
                    deletions.append(entry)
                    if len(deletions) >= batch_size:
                        await self._flush_deletions(deletions, path, result)

                if self.cancelled:
                    logger.info("Import cancelled", extra={"file": path.name})
                    return False

            await self._flush_documents(docs, path, result)
            await self._flush_deletions(deletions, path, result)

        logger.debug(
            "Applied dump",
            extra={"file": path.name, "kind": reader.kind.value if reader.kind else None},
        )
        return True

    async def _flush_documents(
        self, docs: list[DumpDocument], path: Path, result: ImportResult
    ) -> None:
        if not docs:
            return
        try:
            await self.target.put_documents(docs)
        except InvalidDocumentError as e:
            etag = next((str(d.etag) for d in docs if d.key == e.key), None)
            raise ApplyError(
                f"Failed to apply document {e.key!r}: {e.reason}",
                key=e.key if isinstance(e.key, str) else None,
                etag=etag,
                path=str(path),
            ) from e
        result.documents += len(docs)
        docs.clear()

    async def _flush_deletions(
        self, deletions: list[DumpDeletion], path: Path, result: ImportResult
    ) -> None:
        if not deletions:
            return
        try:
            await self.target.delete_documents([d.key for d in deletions])
        except InvalidDocumentError as e:
            raise ApplyError(
                f"Failed to apply deletion {e.key!r}: {e.reason}",
                key=e.key if isinstance(e.key, str) else None,
                path=str(path),
            ) from e
        result.deletions += len(deletions)
        result.max_deletion_etag = highest_etag(
            result.max_deletion_etag, *(d.etag for d in deletions)
        )
        deletions.clear()

    async def _purge_source(self, source: SmugglerTransport, cutoff: Etag) -> int:
        await source.connect()
        (await source.probe()).raise_for_status()
        purged = await source.purge_tombstones(cutoff)
        logger.info(
            "Purged source tombstones after import",
            extra={"database": source.database, "cutoff": str(cutoff), "purged": purged},
        )
        return purged
