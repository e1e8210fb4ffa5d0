"""
DocDB Server - Main entry point.

This module starts the DocDB server with all components:
- Document store (SQLite, one file per database)
- HTTP API (remote smuggler transport + administrative purge)
- Periodic export scheduler (optional, with S3 upload)

Usage:
    python -m dbaas.docdb_server.main

Settings are read from the environment (see config.py).

Invariants:
    - Databases listed in DATABASES exist before the HTTP API accepts requests
    - Graceful shutdown lets a running periodic export finish
    - The periodic export database must exist; it is never created implicitly

How to change safely:
    - Stop the HTTP API before the scheduler so no request races a shutdown
    - New components start after the store and stop before it goes away
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import start_http_server
from .config import ServerConfig
from .errors import DatabaseNotFoundError
from .periodic import ExportUploader, PeriodicExportSetup, PeriodicScheduler
from .store import DocumentStore

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure root logging.

    Args:
        log_level: Logging level name
        log_format: "json" for JSONFormatter output, anything else for text
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class Server:
    """DocDB Server orchestrator.

    Owns the document store, the HTTP API and the optional periodic
    exporter, and tears them down in reverse order.

    Attributes:
        config: Server configuration
        store: Document store
        scheduler: Periodic export scheduler (None when disabled)

    Example:
        >>> server = Server(ServerConfig.from_env())
        >>> asyncio.create_task(server.start())
        >>> server.request_shutdown()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.store: DocumentStore | None = None
        self.http_runner: web.AppRunner | None = None
        self.scheduler: PeriodicScheduler | None = None

    async def start(self) -> None:
        """Start the server and all components, then wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting DocDB server")
        self.config.log_config()

        try:
            # Ensure data directory exists
            data_dir = Path(self.config.storage.data_dir)
            data_dir.mkdir(parents=True, exist_ok=True)

            self.store = DocumentStore(
                data_dir=str(data_dir),
                max_batch_size=self.config.storage.max_batch_size,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            for database in self.config.storage.databases:
                await self.store.create_database(database)

            # Start periodic export if enabled
            periodic = self.config.periodic_export
            if periodic.enabled:
                if not await self.store.database_exists(periodic.database):
                    raise DatabaseNotFoundError(periodic.database)

                setup = PeriodicExportSetup.from_config(periodic, self.config.s3)
                uploader = ExportUploader(self.config.s3) if self.config.s3.bucket else None
                self.scheduler = PeriodicScheduler(
                    self.store,
                    setup,
                    uploader=uploader,
                    batch_size=self.config.smuggler.batch_size,
                )
                await self.scheduler.start()

            # Start HTTP API
            self.http_runner = await start_http_server(self.store, self.config.http)

            self._running = True
            logger.info("DocDB server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running and self.http_runner is None and self.scheduler is None:
            return

        logger.info("Stopping DocDB server")

        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        if self.scheduler:
            await self.scheduler.stop()
            self.scheduler = None

        self._running = False
        logger.info("DocDB server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.observability.log_level, config.observability.log_format)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
