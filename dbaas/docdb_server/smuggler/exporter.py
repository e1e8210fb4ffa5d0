"""
Export pipeline: source store -> dump file.

Reads documents and tombstones in etag order, in governed batches, and
streams them into a dump file.

State machine:
    IDLE -> CONNECTING -> READING_DOCS -> READING_DELETIONS -> FINALIZING -> IDLE
    any state -> FAILED on error (a later run may start again)

Read window per batch:
    ceiling = min(current high-water, max_etag)
    read (last_written, ceiling] up to batch_size items
The ceiling is re-captured per batch, so the export is a moving window and
not a snapshot.

Invariants:
    - Documents in a file are strictly ascending by etag; so are deletions
    - The state file is written only after the dump file is complete
    - A failed run leaves the previous state untouched (safe re-export)
    - A cancelled run finalizes the completed batches and records exactly them
    - Full dumps ignore the state file and export every document and every
      unpurged tombstone, so replaying a directory in order stays correct
    - Directory dumps use the {Docs, DocsDeletions} layout; single files are arrays

How to change safely:
    - Never stamp an etag that did not come from the store
    - Lower bounds are exclusive; a returned ceiling that matches no document
      is still a valid lower bound for the next run
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import SmugglerError
from ..etag import Etag, batch_ceiling, highest_etag
from .dumpfile import (
    DELETIONS_PROPERTY,
    DOCS_PROPERTY,
    DumpDeletion,
    DumpWriter,
    document_to_dump,
    new_dump_path,
    open_dump,
)
from .options import BatchSizeGovernor, ExportOptions, SmugglerOptions
from .state import OperationState, read_last_etags_from_file, write_last_etags_to_file
from .transport import SmugglerTransport

logger = logging.getLogger(__name__)


class ExportPhase(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READING_DOCS = "reading_docs"
    READING_DELETIONS = "reading_deletions"
    FINALIZING = "finalizing"
    FAILED = "failed"


@dataclass
class ExportResult:
    """Outcome of an export run.

    Attributes:
        state: Checkpoint after the run (also written to the state file)
        full: Whether a full dump was produced
        documents: Documents written
        deletions: Deletions written
        max_etag: Highest etag contained in the file
        cancelled: Whether the run stopped early on request
    """

    state: OperationState
    full: bool
    documents: int = 0
    deletions: int = 0
    max_etag: Etag = Etag.EMPTY
    cancelled: bool = False

    @property
    def file_path(self) -> str | None:
        return self.state.file_path


class ExportPipeline:
    """Streams a source database into dump files.

    Example:
        >>> pipeline = ExportPipeline(EmbeddedTransport(store, "northwind"))
        >>> result = await pipeline.export_data(ExportOptions(to_directory="/backups"))
        >>> print(result.file_path, result.state.last_docs_etag)
    """

    def __init__(
        self,
        source: SmugglerTransport,
        options: SmugglerOptions | None = None,
    ) -> None:
        self.source = source
        self.options = options or SmugglerOptions()
        self._phase = ExportPhase.IDLE
        self._cancel = asyncio.Event()
        self._batch_size: int | None = None
        self._max_written = Etag.EMPTY

    @property
    def phase(self) -> ExportPhase:
        return self._phase

    def cancel(self) -> None:
        """Stop after the batch in flight."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    async def _batch(self) -> int:
        if self._batch_size is None:
            self._batch_size = await BatchSizeGovernor.govern(self.options, self.source)
        return self._batch_size

    async def export_documents(
        self,
        writer: DumpWriter,
        last_etag: Etag,
        max_etag: Etag | None = None,
    ) -> tuple[Etag, int]:
        """Write documents with etag in (last_etag, max_etag] into the open array.

        Returns:
            (lower bound for the next run, documents written). The bound is the
            last batch ceiling when the window was exhausted, or the last etag
            written when the run was cancelled.
        """
        batch_size = await self._batch()
        last = last_etag
        ceiling = last_etag
        written = 0

        while not self.cancelled:
            high_water = (await self.source.get_last_etags()).last_docs_etag
            ceiling = batch_ceiling(high_water or Etag.EMPTY, max_etag)
            if ceiling <= last:
                break

            batch = await self.source.read_documents(last, batch_size, ceiling)
            for record in batch:
                writer.write_value(document_to_dump(record))
                last = record.etag
            written += len(batch)
            if batch:
                self._max_written = highest_etag(self._max_written, last)

            if len(batch) < batch_size:
                # Window exhausted up to this ceiling; re-check the high-water.
                if max_etag is not None and ceiling >= max_etag:
                    break
                if not batch:
                    break

        if self.cancelled:
            return last, written
        return highest_etag(last, ceiling), written

    async def export_deletions(
        self,
        writer: DumpWriter,
        last_etag: Etag,
        max_etag: Etag | None = None,
    ) -> tuple[Etag, int]:
        """Write {Key, Etag} pairs with etag in (last_etag, max_etag] into the open array.

        Returns:
            (lower bound for the next run, deletions written)
        """
        batch_size = await self._batch()
        last = last_etag
        ceiling = last_etag
        written = 0

        while not self.cancelled:
            high_water = (await self.source.get_last_etags()).last_docs_delete_etag
            ceiling = batch_ceiling(high_water or Etag.EMPTY, max_etag)
            if ceiling <= last:
                break

            batch = await self.source.read_tombstones(last, batch_size, ceiling)
            for tombstone in batch:
                writer.write_value(DumpDeletion(tombstone.key, tombstone.etag).to_dict())
                last = tombstone.etag
            written += len(batch)
            if batch:
                self._max_written = highest_etag(self._max_written, last)

            if len(batch) < batch_size:
                if max_etag is not None and ceiling >= max_etag:
                    break
                if not batch:
                    break

        if self.cancelled:
            return last, written
        return highest_etag(last, ceiling), written

    async def export_data(self, options: ExportOptions) -> ExportResult:
        """Run one export session.

        A cancel() issued before the run starts is honored: the run returns a
        cancelled result without writing a file. The cancel flag is cleared
        when the run ends.

        Raises:
            ConnectivityError: If the source cannot be reached (before any output)
            DatabaseNotFoundError: If the source database does not exist
            SmugglerError: If an export is already running on this pipeline
        """
        if self._phase not in (ExportPhase.IDLE, ExportPhase.FAILED):
            raise SmugglerError("An export is already running", code="EXPORT_IN_PROGRESS")

        # Claimed before the first await so concurrent callers are rejected.
        self._phase = ExportPhase.CONNECTING
        self._max_written = Etag.EMPTY
        self._batch_size = None

        try:
            await self.source.connect()
            (await self.source.probe()).raise_for_status()
            batch_size = await self._batch()

            if options.to_file is not None:
                result = await self._export_single_file(options)
            else:
                result = await self._export_to_directory(options)

        except BaseException:
            self._phase = ExportPhase.FAILED
            raise
        finally:
            self._cancel.clear()

        self._phase = ExportPhase.IDLE
        logger.info(
            "Export finished",
            extra={
                "database": self.source.database,
                "file": result.file_path,
                "full": result.full,
                "documents": result.documents,
                "deletions": result.deletions,
                "batch_size": batch_size,
                "last_docs_etag": str(result.state.last_docs_etag),
                "last_doc_delete_etag": str(result.state.last_doc_delete_etag),
                "cancelled": result.cancelled,
            },
        )
        return result

    async def _export_single_file(self, options: ExportOptions) -> ExportResult:
        path = Path(options.to_file)
        if self.cancelled:
            return ExportResult(
                state=OperationState(
                    last_docs_etag=options.start_docs_etag,
                    last_doc_delete_etag=options.start_docs_deletion_etag,
                ),
                full=True,
                cancelled=True,
            )

        with open_dump(path) as writer:
            self._phase = ExportPhase.READING_DOCS
            writer.write_start_array()
            last_docs, documents = await self.export_documents(
                writer, options.start_docs_etag, options.max_docs_etag
            )
            writer.write_end_array()
            self._phase = ExportPhase.FINALIZING

        state = OperationState(
            file_path=str(path),
            last_docs_etag=last_docs,
            last_doc_delete_etag=options.start_docs_deletion_etag,
        )
        return ExportResult(
            state=state,
            full=True,
            documents=documents,
            max_etag=self._max_written,
            cancelled=self.cancelled,
        )

    async def _export_to_directory(self, options: ExportOptions) -> ExportResult:
        directory = Path(options.to_directory)
        prior = read_last_etags_from_file(directory)
        full = not options.incremental

        if full:
            # Every live document and every tombstone not yet purged.
            low_docs = Etag.EMPTY
            low_deletions = Etag.EMPTY
        elif prior is not None:
            low_docs = prior.last_docs_etag
            low_deletions = prior.last_doc_delete_etag
        else:
            low_docs = options.start_docs_etag
            low_deletions = options.start_docs_deletion_etag

        files = dict(prior.files) if prior else {}
        attachments = prior.last_attachments_etag if prior else None

        if self.cancelled or (not full and not await self._has_changes(low_docs, low_deletions)):
            if not self.cancelled:
                logger.info(
                    "No changes since last export; skipping file",
                    extra={"database": self.source.database, "directory": str(directory)},
                )
            state = prior or OperationState(
                last_docs_etag=low_docs, last_doc_delete_etag=low_deletions
            )
            return ExportResult(
                state=OperationState(
                    file_path=None,
                    last_docs_etag=state.last_docs_etag,
                    last_doc_delete_etag=state.last_doc_delete_etag,
                    last_attachments_etag=state.last_attachments_etag,
                    files=files,
                ),
                full=full,
                cancelled=self.cancelled,
            )

        path = new_dump_path(directory, full)
        with open_dump(path) as writer:
            self._phase = ExportPhase.READING_DOCS
            writer.write_start_object()
            writer.write_property_name(DOCS_PROPERTY)
            writer.write_start_array()
            last_docs, documents = await self.export_documents(
                writer, low_docs, options.max_docs_etag
            )
            writer.write_end_array()

            self._phase = ExportPhase.READING_DELETIONS
            writer.write_property_name(DELETIONS_PROPERTY)
            writer.write_start_array()
            last_deletions, deletions = await self.export_deletions(
                writer, low_deletions, options.max_docs_deletion_etag
            )
            writer.write_end_array()
            writer.write_end_object()
            self._phase = ExportPhase.FINALIZING

        files[path.name] = self._max_written
        state = OperationState(
            file_path=str(path),
            last_docs_etag=last_docs,
            last_doc_delete_etag=last_deletions,
            last_attachments_etag=attachments,
            files=files,
        )
        write_last_etags_to_file(state, directory)

        return ExportResult(
            state=state,
            full=full,
            documents=documents,
            deletions=deletions,
            max_etag=self._max_written,
            cancelled=self.cancelled,
        )

    async def _has_changes(self, low_docs: Etag, low_deletions: Etag) -> bool:
        current = await self.source.get_last_etags()
        return (current.last_docs_etag or Etag.EMPTY) > low_docs or (
            current.last_docs_delete_etag or Etag.EMPTY
        ) > low_deletions
