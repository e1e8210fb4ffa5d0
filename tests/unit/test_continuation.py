"""
Unit tests for the continuation tracker.
"""

import tempfile

import pytest

from dbaas.docdb_server.errors import CorruptInputError
from dbaas.docdb_server.etag import Etag
from dbaas.docdb_server.smuggler import ContinuationState, ContinuationTracker, EmbeddedTransport
from dbaas.docdb_server.store import DocumentStore

DB = "replica"


class TestContinuationTracker:
    """Tests for ContinuationTracker."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def transport(self, data_dir):
        return EmbeddedTransport(DocumentStore(data_dir, wal_mode=False), DB)

    @pytest.mark.asyncio
    async def test_no_token_never_skips(self, transport):
        tracker = ContinuationTracker(transport)

        assert await tracker.should_skip(None, "a.incremental-dump", Etag.EMPTY) is False
        assert await tracker.record_applied(None, "a.incremental-dump", Etag(1, 5)) is None

    @pytest.mark.asyncio
    async def test_skip_after_record(self, transport):
        await transport.store.create_database(DB)
        tracker = ContinuationTracker(transport)

        assert await tracker.should_skip("nightly", "a.incremental-dump", Etag(1, 10)) is False
        await tracker.record_applied("nightly", "a.incremental-dump", Etag(1, 10))

        assert await tracker.should_skip("nightly", "a.incremental-dump", Etag(1, 10)) is True
        # Anything at or below the watermark is covered.
        assert await tracker.should_skip("nightly", "older.incremental-dump", Etag(1, 7)) is True
        assert await tracker.should_skip("nightly", "b.incremental-dump", Etag(1, 11)) is False
        assert await tracker.should_skip("other-token", "a.incremental-dump", Etag(1, 10)) is False

    @pytest.mark.asyncio
    async def test_progress_is_persisted(self, transport):
        """A new tracker (new run) sees progress saved by an earlier one."""
        await transport.store.create_database(DB)
        await ContinuationTracker(transport).record_applied("nightly", "a", Etag(1, 10))

        tracker = ContinuationTracker(transport)

        state = await tracker.get_state("nightly")
        assert state.watermark == Etag(1, 10)
        assert state.files == {"a": Etag(1, 10)}
        assert await tracker.should_skip("nightly", "a", Etag(1, 10)) is True

    @pytest.mark.asyncio
    async def test_watermark_never_moves_back(self, transport):
        await transport.store.create_database(DB)
        tracker = ContinuationTracker(transport)

        await tracker.record_applied("nightly", "b", Etag(1, 20))
        state = await tracker.record_applied("nightly", "a", Etag(1, 5))

        assert state.watermark == Etag(1, 20)

    @pytest.mark.asyncio
    async def test_progress_is_not_replicated(self, transport):
        """Continuation state lives in system documents, outside etag order."""
        await transport.store.create_database(DB)
        await ContinuationTracker(transport).record_applied("nightly", "a", Etag(1, 10))

        assert await transport.store.last_document_etag(DB) == Etag.EMPTY


class TestContinuationState:
    """Tests for ContinuationState serialization."""

    def test_round_trip(self):
        state = ContinuationState(Etag(1, 3), {"a": Etag(1, 3)})
        assert ContinuationState.from_dict(state.to_dict()) == state

    def test_invalid_state_raises(self):
        with pytest.raises(CorruptInputError):
            ContinuationState.from_dict({"Watermark": "garbage"})
