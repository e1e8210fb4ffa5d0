"""
Smuggler CLI tool for DocDB.

Exports a database into dump files, imports dump files into a database, and
runs the administrative tombstone purge. A store is addressed either by the
URL of a running DocDB server or by a local data directory.

Usage:
    docdb-smuggler export --store <url|dir> --database <db> --to-directory <dir> [--full]
    docdb-smuggler export --store <url|dir> --database <db> --to-file <file>
    docdb-smuggler import --store <url|dir> --database <db> --from-directory <dir>
        [--continuation-token <token>] [--purge-source <url|dir>]
    docdb-smuggler purge --store <url|dir> --database <db> --etag <etag>

Exit codes:
    0 - success
    1 - smuggler error (connectivity, missing database, corrupt input, apply failure)
    2 - usage error
    130 - cancelled with Ctrl-C; progress up to the cancellation is kept

Invariants:
    - The CLI never creates databases
    - Ctrl-C cancels between batches and keeps completed work

How to change safely:
    - Add new flags with defaults that keep existing scripts working
    - Keep exit codes stable; automation depends on them
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

from ..config import SmugglerConfig
from ..errors import SmugglerError
from ..etag import Etag
from ..main import setup_logging
from ..smuggler import (
    ExportOptions,
    ExportPipeline,
    ImportOptions,
    ImportPipeline,
    SmugglerOptions,
    SmugglerTransport,
    create_transport,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def _transport(args: argparse.Namespace, location: str) -> SmugglerTransport:
    return create_transport(location, args.database, timeout=args.timeout)


async def _with_cancel(pipeline: Any, run: Any) -> Any:
    """Run a pipeline coroutine, turning SIGINT into pipeline.cancel()."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, pipeline.cancel)
    except NotImplementedError:
        # Windows event loops do not support signal handlers
        pass
    try:
        return await run
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


async def run_export(args: argparse.Namespace) -> int:
    transport = _transport(args, args.store)
    pipeline = ExportPipeline(
        transport,
        SmugglerOptions(batch_size=args.batch_size),
    )
    options = ExportOptions(
        to_file=args.to_file,
        to_directory=args.to_directory,
        start_docs_etag=args.start_etag or Etag.EMPTY,
        start_docs_deletion_etag=args.start_deletion_etag or Etag.EMPTY,
        max_docs_etag=args.max_etag,
        max_docs_deletion_etag=args.max_deletion_etag,
        incremental=not args.full,
    )

    try:
        result = await _with_cancel(pipeline, pipeline.export_data(options))
    finally:
        await transport.close()

    print("Export cancelled" if result.cancelled else "Export completed")
    print(f"  File: {result.file_path or 'none (no changes)'}")
    print(f"  Kind: {'full' if result.full else 'incremental'}")
    print(f"  Documents: {result.documents}")
    print(f"  Deletions: {result.deletions}")
    print(f"  Last document etag: {result.state.last_docs_etag}")
    print(f"  Last deletion etag: {result.state.last_doc_delete_etag}")
    return EXIT_CANCELLED if result.cancelled else EXIT_OK


async def run_import(args: argparse.Namespace) -> int:
    transport = _transport(args, args.store)
    purge_source = None
    if args.purge_source:
        purge_source = create_transport(
            args.purge_source,
            args.purge_source_database or args.database,
            timeout=args.timeout,
        )
    pipeline = ImportPipeline(
        transport,
        SmugglerOptions(
            batch_size=args.batch_size,
            continuation_token=args.continuation_token,
        ),
    )
    options = ImportOptions(
        from_file=args.from_file,
        from_directory=args.from_directory,
        purge_source=purge_source,
    )

    try:
        result = await _with_cancel(pipeline, pipeline.import_data(options))
    finally:
        await transport.close()
        if purge_source is not None:
            await purge_source.close()

    print("Import cancelled" if result.cancelled else "Import completed")
    print(f"  Files applied: {len(result.files_applied)}")
    print(f"  Files skipped: {len(result.files_skipped)}")
    print(f"  Documents: {result.documents}")
    print(f"  Deletions: {result.deletions}")
    print(f"  Watermark: {result.watermark or 'none'}")
    if result.purged is not None:
        print(f"  Tombstones purged at source: {result.purged}")
    return EXIT_CANCELLED if result.cancelled else EXIT_OK


async def run_purge(args: argparse.Namespace) -> int:
    transport = _transport(args, args.store)
    try:
        await transport.connect()
        (await transport.probe()).raise_for_status()
        purged = await transport.purge_tombstones(args.etag)
    finally:
        await transport.close()

    print(f"Purged {purged} tombstones up to {args.etag}")
    return EXIT_OK


def _etag_arg(value: str) -> Etag:
    try:
        return Etag.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    defaults = SmugglerConfig.from_env()

    parser = argparse.ArgumentParser(
        prog="docdb-smuggler",
        description="Export, import and purge DocDB database content",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument(
        "--log-format", default="text", choices=["text", "json"], help="Log output format"
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--store", required=True, help="Server URL (http://...) or local data directory"
    )
    common.add_argument("--database", required=True, help="Database name")
    common.add_argument(
        "--timeout",
        type=float,
        default=defaults.timeout_seconds,
        help="Request timeout in seconds for remote stores",
    )

    batching = argparse.ArgumentParser(add_help=False)
    batching.add_argument(
        "--batch-size",
        type=int,
        default=defaults.batch_size,
        help="Requested batch size (capped by the server maximum)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    export = sub.add_parser("export", parents=[common, batching], help="Export a database")
    target = export.add_mutually_exclusive_group(required=True)
    target.add_argument("--to-file", help="Write one full dump file")
    target.add_argument("--to-directory", help="Write dump files and state into a directory")
    export.add_argument("--full", action="store_true", help="Force a full export")
    export.add_argument("--start-etag", type=_etag_arg, help="Document etag to start after")
    export.add_argument(
        "--start-deletion-etag", type=_etag_arg, help="Deletion etag to start after"
    )
    export.add_argument("--max-etag", type=_etag_arg, help="Last document etag to export")
    export.add_argument("--max-deletion-etag", type=_etag_arg, help="Last deletion etag to export")
    export.set_defaults(handler=run_export)

    imp = sub.add_parser("import", parents=[common, batching], help="Import dump files")
    source = imp.add_mutually_exclusive_group(required=True)
    source.add_argument("--from-file", help="Import one dump file")
    source.add_argument("--from-directory", help="Import every dump file in a directory")
    imp.add_argument("--continuation-token", help="Resume token; re-runs skip applied files")
    imp.add_argument(
        "--purge-source",
        help="Source store (URL or directory) to purge applied tombstones from",
    )
    imp.add_argument(
        "--purge-source-database",
        help="Database on the purge source (defaults to --database)",
    )
    imp.set_defaults(handler=run_import)

    purge = sub.add_parser("purge", parents=[common], help="Purge tombstones up to an etag")
    purge.add_argument("--etag", type=_etag_arg, required=True, help="Inclusive purge cutoff")
    purge.set_defaults(handler=run_purge)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the smuggler tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "batch_size", None) is not None and args.batch_size <= 0:
        parser.error("--batch-size must be positive")

    setup_logging(args.log_level, args.log_format)

    try:
        return asyncio.run(args.handler(args))
    except SmugglerError as e:
        logger.error(f"{args.command} failed: {e.message}", extra={"error_code": e.code})
        print(f"{args.command.capitalize()} failed: {e.message}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
