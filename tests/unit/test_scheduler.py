"""
Unit tests for the periodic export scheduler.

Tests cover:
- Full vs incremental decision from the persisted status
- No file for incremental runs without changes
- Tombstone purge after a durable (and uploaded) run
- Replaying the export directory after a full run keeps deletions
- Non-reentrant ticks
- Restart does not trigger a duplicate full export
"""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from dbaas.docdb_server.config import PeriodicExportConfig, S3Config
from dbaas.docdb_server.etag import Etag
from dbaas.docdb_server.periodic import (
    STATUS_DOCUMENT_KEY,
    PeriodicExportSetup,
    PeriodicExportStatus,
    PeriodicScheduler,
)
from dbaas.docdb_server.smuggler import EmbeddedTransport, ImportOptions, ImportPipeline
from dbaas.docdb_server.smuggler.state import STATE_FILE_NAME
from dbaas.docdb_server.store import DocumentStore

DB = "northwind"
MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingUploader:
    def __init__(self, fail=False, gate=None):
        self.uploads = []
        self.fail = fail
        self.gate = gate
        self.closed = False

    async def upload(self, path, database, state_path=None):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionError("s3 unavailable")
        self.uploads.append((Path(path).name, database, Path(state_path).name))
        return f"exports/database={database}/{Path(path).name}"

    async def close(self):
        self.closed = True


class TestPeriodicExportSetup:
    """Tests for PeriodicExportSetup."""

    def test_requires_an_interval(self):
        with pytest.raises(ValueError):
            PeriodicExportSetup(database=DB, local_folder="/tmp/x")

    def test_tick_interval_is_smallest_interval(self):
        setup = PeriodicExportSetup(
            database=DB, local_folder="/tmp/x", interval_ms=MINUTE_MS, full_backup_interval_ms=HOUR_MS
        )
        assert setup.tick_interval_ms == MINUTE_MS

    def test_from_config(self):
        setup = PeriodicExportSetup.from_config(
            PeriodicExportConfig(
                enabled=True, database=DB, local_folder="/tmp/x", full_backup_interval_ms=HOUR_MS
            ),
            S3Config(bucket="backups", export_prefix="nightly"),
        )
        assert setup.s3_bucket == "backups"
        assert setup.s3_prefix == "nightly"
        assert setup.interval_ms is None

    def test_status_round_trip(self):
        status = PeriodicExportStatus(
            last_backup=datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc),
            last_full_backup=None,
            last_docs_etag=Etag(1, 4),
        )
        data = status.to_dict()

        assert data["LastFullBackup"] is None
        assert PeriodicExportStatus.from_dict(data) == status


class TestPeriodicScheduler:
    """Tests for PeriodicScheduler."""

    @pytest.fixture
    def tmp(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def store(self, tmp):
        return DocumentStore(str(tmp / "data"), wal_mode=False)

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def setup(self, tmp):
        return PeriodicExportSetup(
            database=DB,
            local_folder=str(tmp / "exports"),
            interval_ms=MINUTE_MS,
            full_backup_interval_ms=HOUR_MS,
        )

    async def _seed(self, store, start, count):
        for i in range(start, start + count):
            await store.put(DB, f"users/{i}", {"n": i}, {"@collection": "Users"})

    @pytest.mark.asyncio
    async def test_first_tick_runs_full_export(self, store, setup, clock):
        await store.create_database(DB)
        await self._seed(store, 1, 5)
        scheduler = PeriodicScheduler(store, setup, clock=clock)
        await scheduler.load_status()

        result = await scheduler.tick()

        assert result.full is True
        assert result.documents == 5
        assert result.file_path.endswith(".full-dump")
        assert scheduler.status.last_full_backup == clock.now
        assert scheduler.status.last_docs_etag == await store.last_document_etag(DB)

        saved = await store.get_system_document(DB, STATUS_DOCUMENT_KEY)
        assert saved["LastFullBackup"] == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_incremental_between_full_exports(self, store, setup, clock):
        await store.create_database(DB)
        await self._seed(store, 1, 5)
        scheduler = PeriodicScheduler(store, setup, clock=clock)
        await scheduler.tick()

        clock.advance(minutes=1)
        await self._seed(store, 6, 3)
        incremental = await scheduler.tick()

        assert incremental.full is False
        assert incremental.documents == 3
        assert incremental.file_path.endswith(".incremental-dump")

        clock.advance(minutes=1)
        unchanged = await scheduler.tick()
        assert unchanged.file_path is None

        clock.advance(hours=1)
        full = await scheduler.tick()
        assert full.full is True
        assert full.documents == 8

    @pytest.mark.asyncio
    async def test_no_status_update_without_a_file(self, store, setup, clock):
        await store.create_database(DB)
        await self._seed(store, 1, 2)
        scheduler = PeriodicScheduler(store, setup, clock=clock)
        await scheduler.tick()
        first_backup = scheduler.status.last_backup

        clock.advance(minutes=5)
        await scheduler.tick()

        assert scheduler.status.last_backup == first_backup

    @pytest.mark.asyncio
    async def test_restart_does_not_repeat_full_export(self, store, setup, clock):
        """The full/incremental decision uses the persisted status."""
        await store.create_database(DB)
        await self._seed(store, 1, 2)
        await PeriodicScheduler(store, setup, clock=clock).tick()

        clock.advance(minutes=2)
        restarted = PeriodicScheduler(store, setup, clock=clock)
        await restarted.load_status()

        assert restarted.is_full_due(clock.now) is False
        await self._seed(store, 3, 1)
        result = await restarted.tick()
        assert result.full is False

    @pytest.mark.asyncio
    async def test_incremental_only_setup_never_runs_full(self, store, tmp, clock):
        await store.create_database(DB)
        await self._seed(store, 1, 2)
        setup = PeriodicExportSetup(
            database=DB, local_folder=str(tmp / "exports"), interval_ms=MINUTE_MS
        )
        scheduler = PeriodicScheduler(store, setup, clock=clock)

        result = await scheduler.tick()

        assert result.full is False
        assert result.documents == 2
        assert scheduler.status.last_full_backup is None

    @pytest.mark.asyncio
    async def test_tombstones_purged_after_export(self, store, setup, clock):
        await store.create_database(DB)
        await self._seed(store, 1, 10)
        uploader = RecordingUploader()
        scheduler = PeriodicScheduler(store, setup, uploader=uploader, clock=clock)
        await scheduler.tick()

        for i in (7, 8, 9):
            await store.delete(DB, f"users/{i}")
        clock.advance(minutes=1)
        result = await scheduler.tick()

        assert result.deletions == 3
        assert await store.tombstones(DB).count() == 0
        assert scheduler.status.last_docs_deletion_etag == result.state.last_doc_delete_etag
        assert not scheduler.status.last_docs_deletion_etag.is_empty
        assert [u[2] for u in uploader.uploads] == [STATE_FILE_NAME, STATE_FILE_NAME]

    @pytest.mark.asyncio
    async def test_replay_after_full_run_keeps_deletions(self, store, setup, tmp, clock):
        """A key deleted between an incremental and a full run stays deleted on replay."""
        await store.create_database(DB)
        await self._seed(store, 1, 2)
        scheduler = PeriodicScheduler(store, setup, clock=clock)
        await scheduler.tick()

        clock.advance(minutes=1)
        await self._seed(store, 3, 1)
        incremental = await scheduler.tick()
        assert incremental.full is False

        await store.delete(DB, "users/3")
        clock.advance(hours=1)
        full = await scheduler.tick()

        assert full.full is True
        assert full.deletions == 1
        assert await store.tombstones(DB).count() == 0

        target = DocumentStore(str(tmp / "target"), wal_mode=False)
        await target.create_database("replica")
        await ImportPipeline(EmbeddedTransport(target, "replica")).import_data(
            ImportOptions(from_directory=setup.local_folder)
        )

        assert await target.get("replica", "users/3") is None
        assert await target.get("replica", "users/1") is not None

    @pytest.mark.asyncio
    async def test_upload_failure_keeps_tombstones(self, store, setup, clock):
        await store.create_database(DB)
        await self._seed(store, 1, 3)
        await store.delete(DB, "users/1")
        scheduler = PeriodicScheduler(
            store, setup, uploader=RecordingUploader(fail=True), clock=clock
        )
        scheduler.status.last_full_backup = clock.now

        with pytest.raises(ConnectionError):
            await scheduler.run(full=False)

        assert await store.tombstones(DB).count() == 1
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_tick_during_run_is_dropped(self, store, setup, clock):
        await store.create_database(DB)
        await self._seed(store, 1, 3)
        gate = asyncio.Event()
        scheduler = PeriodicScheduler(
            store, setup, uploader=RecordingUploader(gate=gate), clock=clock
        )

        first = asyncio.create_task(scheduler.tick())
        while not scheduler.is_running:
            await asyncio.sleep(0)

        assert await scheduler.tick() is None
        assert scheduler.dropped_ticks == 1

        gate.set()
        result = await first
        assert result.documents == 3

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, setup, clock):
        await store.create_database(DB)
        uploader = RecordingUploader()
        scheduler = PeriodicScheduler(store, setup, uploader=uploader, clock=clock)

        await scheduler.start()
        await scheduler.stop()

        assert uploader.closed is True
