"""
Unit tests for the tombstone ledger.

Tests cover:
- Delete records a tombstone with the document's collection
- Re-creating a key clears its tombstone
- Range reads (exclusive low, inclusive max, ascending)
- Purge safety and idempotency
"""

import tempfile

import pytest

from dbaas.docdb_server.etag import Etag
from dbaas.docdb_server.store import DocumentStore, Tombstone

DB = "northwind"


class TestTombstoneLedger:
    """Tests for TombstoneLedger."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return DocumentStore(data_dir, wal_mode=False)

    async def _seed(self, store, count=10):
        await store.create_database(DB)
        for i in range(1, count + 1):
            await store.put(DB, f"users/{i}", {"n": i}, {"@collection": "Users"})

    @pytest.mark.asyncio
    async def test_delete_records_tombstone(self, store):
        await self._seed(store, 3)

        assert await store.delete(DB, "users/2") is True

        tombstone = await store.tombstones(DB).get("users/2")
        assert tombstone is not None
        assert tombstone.collection == "Users"
        assert await store.tombstones(DB).count() == 1

    @pytest.mark.asyncio
    async def test_delete_missing_key_records_nothing(self, store):
        await self._seed(store, 1)

        assert await store.delete(DB, "users/404") is False
        assert await store.tombstones(DB).count() == 0

    @pytest.mark.asyncio
    async def test_deletion_etag_follows_document_etags(self, store):
        """Documents and tombstones draw from one counter."""
        await self._seed(store, 3)
        last_doc = await store.last_document_etag(DB)

        await store.delete(DB, "users/1")

        tombstone = await store.tombstones(DB).get("users/1")
        assert tombstone.etag > last_doc

    @pytest.mark.asyncio
    async def test_recreate_clears_tombstone(self, store):
        """Delete then re-put leaves no tombstone for the key."""
        await self._seed(store, 2)
        await store.delete(DB, "users/1")
        assert await store.tombstones(DB).get("users/1") is not None

        await store.put(DB, "users/1", {"n": 1, "again": True})

        assert await store.tombstones(DB).get("users/1") is None
        assert await store.tombstones(DB).range_since(Etag.EMPTY, 100) == []

    @pytest.mark.asyncio
    async def test_second_delete_replaces_tombstone(self, store):
        """At most one tombstone per key."""
        await self._seed(store, 1)
        await store.delete(DB, "users/1")
        first = await store.tombstones(DB).get("users/1")

        await store.put(DB, "users/1", {"n": 1})
        await store.delete(DB, "users/1")

        tombstones = await store.tombstones(DB).range_since(Etag.EMPTY, 100)
        assert [t.key for t in tombstones] == ["users/1"]
        assert tombstones[0].etag > first.etag

    @pytest.mark.asyncio
    async def test_range_since_is_ascending_and_exclusive(self, store):
        await self._seed(store, 10)
        for i in (7, 3, 9):
            await store.delete(DB, f"users/{i}")

        ledger = store.tombstones(DB)
        everything = await ledger.range_since(Etag.EMPTY, 100)
        assert [t.key for t in everything] == ["users/7", "users/3", "users/9"]
        assert everything == sorted(everything, key=lambda t: t.etag)

        after_first = await ledger.range_since(everything[0].etag, 100)
        assert [t.key for t in after_first] == ["users/3", "users/9"]

        limited = await ledger.range_since(Etag.EMPTY, 2)
        assert len(limited) == 2

        bounded = await ledger.range_since(Etag.EMPTY, 100, max_etag=everything[1].etag)
        assert [t.key for t in bounded] == ["users/7", "users/3"]

    @pytest.mark.asyncio
    async def test_purge_never_removes_newer_tombstones(self, store):
        await self._seed(store, 10)
        for i in (1, 2, 3, 4):
            await store.delete(DB, f"users/{i}")

        ledger = store.tombstones(DB)
        tombstones = await ledger.range_since(Etag.EMPTY, 100)
        cutoff = tombstones[1].etag

        removed = await ledger.purge_up_to(cutoff)

        assert removed == 2
        remaining = await ledger.range_since(Etag.EMPTY, 100)
        assert [t.key for t in remaining] == ["users/3", "users/4"]
        assert all(t.etag > cutoff for t in remaining)

    @pytest.mark.asyncio
    async def test_purge_is_idempotent(self, store):
        await self._seed(store, 3)
        await store.delete(DB, "users/1")
        cutoff = await store.tombstones(DB).last_etag()

        assert await store.tombstones(DB).purge_up_to(cutoff) == 1
        assert await store.tombstones(DB).purge_up_to(cutoff) == 0

    @pytest.mark.asyncio
    async def test_last_etag_empty_without_tombstones(self, store):
        await self._seed(store, 1)
        assert await store.tombstones(DB).last_etag() == Etag.EMPTY

    def test_tombstone_dict_round_trip(self):
        tombstone = Tombstone("users/1", Etag(1, 4), "Users", 1700000000000)
        assert Tombstone.from_dict(tombstone.to_dict()) == tombstone
