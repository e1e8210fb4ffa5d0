"""
Integration tests for ExportPipeline over an embedded store.

Tests cover:
- Etag windows (exclusive start, inclusive max)
- Incremental directory exports with deletions
- Full exports resetting the incremental baseline
- No file when nothing changed
- Cancellation and resume, including a cancel issued before the run
- Writes landing while an export runs
- One export at a time per pipeline
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from dbaas.docdb_server.errors import DatabaseNotFoundError, SmugglerError
from dbaas.docdb_server.etag import Etag
from dbaas.docdb_server.smuggler import (
    DumpDeletion,
    DumpDocument,
    DumpKind,
    DumpReader,
    EmbeddedTransport,
    ExportOptions,
    ExportPhase,
    ExportPipeline,
    SmugglerOptions,
    read_last_etags_from_file,
)
from dbaas.docdb_server.smuggler.dumpfile import list_dump_files
from dbaas.docdb_server.store import DocumentStore

DB = "northwind"


def _entries(path):
    with DumpReader(path) as reader:
        return list(reader)


class CancellingTransport(EmbeddedTransport):
    """Cancels the attached pipeline after serving the first batch."""

    pipeline = None
    fired = False

    async def read_documents(self, since, limit, max_etag=None):
        batch = await super().read_documents(since, limit, max_etag)
        if not self.fired and self.pipeline is not None:
            self.fired = True
            self.pipeline.cancel()
        return batch


class WritingTransport(EmbeddedTransport):
    """Writes a new document into the source on each of the first reads."""

    writes = 0

    async def read_documents(self, since, limit, max_etag=None):
        batch = await super().read_documents(since, limit, max_etag)
        if self.writes < 2:
            self.writes += 1
            await self.store.put(
                self.database, f"users/new-{self.writes}", {"n": 0}, {"@collection": "Users"}
            )
        return batch


class GatedTransport(EmbeddedTransport):
    """Holds connect() until the gate is opened."""

    def __init__(self, store, database):
        super().__init__(store, database)
        self.gate = asyncio.Event()

    async def connect(self):
        await self.gate.wait()


class TestExportPipeline:
    """Integration tests for ExportPipeline."""

    @pytest.fixture
    def tmp(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def store(self, tmp):
        return DocumentStore(str(tmp / "data"), max_batch_size=1024, wal_mode=False)

    @pytest.fixture
    def out_dir(self, tmp):
        return tmp / "exports"

    async def _seed(self, store, start, count):
        await store.put_many(
            DB,
            [(f"users/{i}", {"n": i}, {"@collection": "Users"}) for i in range(start, start + count)],
        )

    @pytest.mark.asyncio
    async def test_window_is_exclusive_start_inclusive_max(self, store, tmp):
        await store.create_database(DB)
        await self._seed(store, 1, 10)
        pipeline = ExportPipeline(EmbeddedTransport(store, DB))

        result = await pipeline.export_data(
            ExportOptions(
                to_file=str(tmp / "window.full-dump"),
                start_docs_etag=Etag(1, 5),
                max_docs_etag=Etag(1, 7),
            )
        )

        entries = _entries(tmp / "window.full-dump")
        assert [e.key for e in entries] == ["users/6", "users/7"]
        assert result.state.last_docs_etag == Etag(1, 7)
        assert result.max_etag == Etag(1, 7)
        assert pipeline.phase is ExportPhase.IDLE

    @pytest.mark.asyncio
    async def test_single_file_export_is_ordered(self, store, tmp):
        await store.create_database(DB)
        await self._seed(store, 1, 10)
        await store.put(DB, "users/2", {"n": 200}, {"@collection": "Users"})
        pipeline = ExportPipeline(EmbeddedTransport(store, DB), SmugglerOptions(batch_size=3))

        result = await pipeline.export_data(ExportOptions(to_file=str(tmp / "all.full-dump")))

        with DumpReader(tmp / "all.full-dump") as reader:
            entries = list(reader)
            assert reader.kind is DumpKind.FULL
        etags = [e.etag for e in entries]
        assert etags == sorted(etags)
        assert len(set(etags)) == len(etags)
        # Superseded version of users/2 is not exported.
        assert [e.key for e in entries][-1] == "users/2"
        assert len(entries) == 10
        assert result.documents == 10
        assert result.state.last_docs_etag == Etag(1, 11)

    @pytest.mark.asyncio
    async def test_incremental_export_includes_deletions(self, store, out_dir):
        await store.create_database(DB)
        await self._seed(store, 1, 10)
        pipeline = ExportPipeline(EmbeddedTransport(store, DB))

        first = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))
        assert first.documents == 10
        assert first.file_path.endswith(".incremental-dump")

        for i in (7, 8, 9):
            await store.delete(DB, f"users/{i}")
        second = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        entries = _entries(second.file_path)
        assert entries == [
            DumpDeletion("users/7", Etag(1, 11)),
            DumpDeletion("users/8", Etag(1, 12)),
            DumpDeletion("users/9", Etag(1, 13)),
        ]
        assert second.documents == 0
        assert second.deletions == 3

        state = read_last_etags_from_file(out_dir)
        assert state.last_docs_etag == Etag(1, 10)
        assert state.last_doc_delete_etag == Etag(1, 13)
        assert [p.name for p in list_dump_files(out_dir)] == sorted(state.files)

    @pytest.mark.asyncio
    async def test_delete_then_recreate_exports_only_document(self, store, out_dir):
        await store.create_database(DB)
        await self._seed(store, 1, 5)
        pipeline = ExportPipeline(EmbeddedTransport(store, DB))
        await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        await store.delete(DB, "users/3")
        await store.put(DB, "users/3", {"n": 33}, {"@collection": "Users"})
        result = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        entries = _entries(result.file_path)
        assert len(entries) == 1
        assert isinstance(entries[0], DumpDocument)
        assert entries[0].key == "users/3"
        assert entries[0].payload == {"n": 33}

    @pytest.mark.asyncio
    async def test_no_changes_writes_no_file(self, store, out_dir):
        await store.create_database(DB)
        await self._seed(store, 1, 3)
        pipeline = ExportPipeline(EmbeddedTransport(store, DB))
        await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        result = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        assert result.file_path is None
        assert result.state.last_docs_etag == Etag(1, 3)
        assert len(list_dump_files(out_dir)) == 1

    @pytest.mark.asyncio
    async def test_full_export_resets_baseline(self, store, out_dir):
        await store.create_database(DB)
        await self._seed(store, 1, 5)
        await store.delete(DB, "users/1")
        pipeline = ExportPipeline(EmbeddedTransport(store, DB))

        full = await pipeline.export_data(
            ExportOptions(to_directory=str(out_dir), incremental=False)
        )

        assert full.full is True
        assert full.file_path.endswith(".full-dump")
        assert full.documents == 4
        assert full.deletions == 1
        assert _entries(full.file_path)[-1] == DumpDeletion("users/1", Etag(1, 6))
        assert full.state.last_doc_delete_etag == Etag(1, 6)

        # Nothing in the full dump is exported again.
        after = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))
        assert after.file_path is None

        await self._seed(store, 6, 1)
        incremental = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))
        assert [e.key for e in _entries(incremental.file_path)] == ["users/6"]

    @pytest.mark.asyncio
    async def test_cancel_stops_after_batch_and_resumes(self, store, out_dir):
        await store.create_database(DB)
        await self._seed(store, 1, 10)
        transport = CancellingTransport(store, DB)
        pipeline = ExportPipeline(transport, SmugglerOptions(batch_size=3))
        transport.pipeline = pipeline

        cancelled = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        assert cancelled.cancelled is True
        assert cancelled.documents == 3
        assert cancelled.state.last_docs_etag == Etag(1, 3)
        assert [e.key for e in _entries(cancelled.file_path)] == ["users/1", "users/2", "users/3"]

        resumed = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        assert resumed.cancelled is False
        assert resumed.documents == 7
        assert _entries(resumed.file_path)[0].key == "users/4"

    @pytest.mark.asyncio
    async def test_batch_size_capped_by_server(self, tmp):
        store = DocumentStore(str(tmp / "small"), max_batch_size=4, wal_mode=False)
        await store.create_database(DB)
        await self._seed(store, 1, 9)
        options = SmugglerOptions(batch_size=100)
        pipeline = ExportPipeline(EmbeddedTransport(store, DB), options)

        result = await pipeline.export_data(ExportOptions(to_file=str(tmp / "x.full-dump")))

        assert options.batch_size == 4
        assert result.documents == 9

    @pytest.mark.asyncio
    async def test_missing_database_fails_before_output(self, store, out_dir):
        pipeline = ExportPipeline(EmbeddedTransport(store, "missing"))

        with pytest.raises(DatabaseNotFoundError):
            await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        assert not out_dir.exists()
        assert pipeline.phase is ExportPhase.FAILED

    @pytest.mark.asyncio
    async def test_full_export_carries_unpurged_deletions(self, store, out_dir):
        """A full dump holds every tombstone, including ones from before the last run."""
        await store.create_database(DB)
        await self._seed(store, 1, 3)
        pipeline = ExportPipeline(EmbeddedTransport(store, DB))
        await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))
        await self._seed(store, 4, 1)
        await store.delete(DB, "users/1")
        await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))
        await store.delete(DB, "users/4")

        full = await pipeline.export_data(
            ExportOptions(to_directory=str(out_dir), incremental=False)
        )

        with DumpReader(full.file_path) as reader:
            entries = list(reader)
            assert reader.kind is DumpKind.INCREMENTAL
        assert [e.key for e in entries if isinstance(e, DumpDocument)] == ["users/2", "users/3"]
        assert [e for e in entries if isinstance(e, DumpDeletion)] == [
            DumpDeletion("users/1", Etag(1, 5)),
            DumpDeletion("users/4", Etag(1, 6)),
        ]
        assert full.deletions == 2
        assert full.state.last_doc_delete_etag == Etag(1, 6)

    @pytest.mark.asyncio
    async def test_writes_during_export_are_included(self, store, tmp):
        """The ceiling is re-read per batch, so documents written mid-run are exported."""
        await store.create_database(DB)
        await self._seed(store, 1, 4)
        transport = WritingTransport(store, DB)
        pipeline = ExportPipeline(transport, SmugglerOptions(batch_size=2))

        result = await pipeline.export_data(ExportOptions(to_file=str(tmp / "live.full-dump")))

        entries = _entries(tmp / "live.full-dump")
        assert [e.key for e in entries] == [
            "users/1",
            "users/2",
            "users/3",
            "users/4",
            "users/new-1",
            "users/new-2",
        ]
        etags = [e.etag for e in entries]
        assert all(a < b for a, b in zip(etags, etags[1:]))
        assert result.documents == 6
        assert result.state.last_docs_etag >= etags[-1]
        assert result.state.last_docs_etag == await store.last_document_etag(DB)

    @pytest.mark.asyncio
    async def test_concurrent_export_is_rejected(self, store, out_dir, tmp):
        await store.create_database(DB)
        await self._seed(store, 1, 3)
        transport = GatedTransport(store, DB)
        pipeline = ExportPipeline(transport)

        first = asyncio.create_task(
            pipeline.export_data(ExportOptions(to_directory=str(out_dir)))
        )
        await asyncio.sleep(0)
        assert pipeline.phase is ExportPhase.CONNECTING

        with pytest.raises(SmugglerError) as exc_info:
            await pipeline.export_data(ExportOptions(to_file=str(tmp / "other.full-dump")))

        transport.gate.set()
        result = await first

        assert exc_info.value.code == "EXPORT_IN_PROGRESS"
        assert result.documents == 3
        assert not (tmp / "other.full-dump").exists()
        assert pipeline.phase is ExportPhase.IDLE

    @pytest.mark.asyncio
    async def test_cancel_before_run_is_honored(self, store, out_dir):
        await store.create_database(DB)
        await self._seed(store, 1, 3)
        pipeline = ExportPipeline(EmbeddedTransport(store, DB))

        pipeline.cancel()
        cancelled = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        assert cancelled.cancelled is True
        assert cancelled.file_path is None
        assert cancelled.documents == 0
        assert pipeline.cancelled is False

        resumed = await pipeline.export_data(ExportOptions(to_directory=str(out_dir)))

        assert resumed.cancelled is False
        assert resumed.documents == 3
