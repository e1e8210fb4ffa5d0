"""
Unit tests for the smuggler command line tool.
"""

import asyncio

import pytest

from dbaas.docdb_server.etag import Etag
from dbaas.docdb_server.store import DocumentStore
from dbaas.docdb_server.tools.smuggler_cli import EXIT_FAILED, EXIT_OK, main

DB = "northwind"


def _seed(data_dir, count, deleted=()):
    async def seed():
        store = DocumentStore(str(data_dir), wal_mode=False)
        await store.create_database(DB)
        await store.put_many(DB, [(f"users/{i}", {"n": i}, None) for i in range(1, count + 1)])
        for key in deleted:
            await store.delete(DB, key)
        return store

    return asyncio.run(seed())


class TestSmugglerCli:
    """Tests for the docdb-smuggler entry point against local data directories."""

    def test_export_then_import(self, tmp_path, capsys):
        _seed(tmp_path / "source", 5)
        asyncio.run(DocumentStore(str(tmp_path / "target")).create_database(DB))
        exports = tmp_path / "exports"

        code = main(
            ["export", "--store", str(tmp_path / "source"), "--database", DB,
             "--to-directory", str(exports)]
        )
        assert code == EXIT_OK
        assert "Documents: 5" in capsys.readouterr().out

        code = main(
            ["import", "--store", str(tmp_path / "target"), "--database", DB,
             "--from-directory", str(exports), "--continuation-token", "nightly"]
        )
        out = capsys.readouterr().out
        assert code == EXIT_OK
        assert "Files applied: 1" in out
        assert "Documents: 5" in out

        target = DocumentStore(str(tmp_path / "target"))
        assert asyncio.run(target.get_stats(DB))["documents"] == 5

    def test_import_purges_source_tombstones(self, tmp_path, capsys):
        _seed(tmp_path / "source", 4, deleted=["users/1", "users/2"])
        asyncio.run(DocumentStore(str(tmp_path / "target")).create_database("replica"))
        exports = tmp_path / "exports"
        main(["export", "--store", str(tmp_path / "source"), "--database", DB,
              "--to-directory", str(exports)])

        code = main(
            ["import", "--store", str(tmp_path / "target"), "--database", "replica",
             "--from-directory", str(exports),
             "--purge-source", str(tmp_path / "source"), "--purge-source-database", DB]
        )

        assert code == EXIT_OK
        assert "Tombstones purged at source: 2" in capsys.readouterr().out
        source = DocumentStore(str(tmp_path / "source"))
        assert asyncio.run(source.tombstones(DB).count()) == 0

    def test_missing_database_fails(self, tmp_path, capsys):
        code = main(
            ["export", "--store", str(tmp_path), "--database", "missing",
             "--to-directory", str(tmp_path / "exports")]
        )

        assert code == EXIT_FAILED
        assert "does not support database creation" in capsys.readouterr().err

    def test_purge(self, tmp_path, capsys):
        _seed(tmp_path, 3, deleted=["users/1", "users/2"])

        code = main(
            ["purge", "--store", str(tmp_path), "--database", DB, "--etag", str(Etag(1, 4))]
        )

        assert code == EXIT_OK
        assert "Purged 1 tombstones" in capsys.readouterr().out

    def test_invalid_etag_is_usage_error(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["purge", "--store", str(tmp_path), "--database", DB, "--etag", "nope"])

        assert exc_info.value.code == 2

    def test_non_positive_batch_size_is_usage_error(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(
                ["export", "--store", str(tmp_path), "--database", DB,
                 "--to-file", str(tmp_path / "x.full-dump"), "--batch-size", "0"]
            )

        assert exc_info.value.code == 2

    def test_export_target_required(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["export", "--store", str(tmp_path), "--database", DB])
