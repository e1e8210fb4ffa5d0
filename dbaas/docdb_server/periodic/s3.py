"""
S3 upload of finished export files.

Upload layout:
    s3://<bucket>/<prefix>/database=<name>/<dump file name>
    s3://<bucket>/<prefix>/database=<name>/IncrementalExport.state.json

Invariants:
    - Only complete dump files are uploaded (never *.tmp)
    - The state file is uploaded after the dump it describes

How to change safely:
    - Keep the key layout stable; restore tooling lists by prefix
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from aiobotocore.session import get_session

from ..config import S3Config

logger = logging.getLogger(__name__)


class ExportUploader:
    """Uploads dump files produced by periodic exports to S3.

    Example:
        >>> uploader = ExportUploader(config.s3)
        >>> await uploader.start()
        >>> key = await uploader.upload(Path(result.file_path), "northwind")
        >>> await uploader.close()
    """

    def __init__(self, s3_config: S3Config, prefix: str | None = None) -> None:
        if not s3_config.bucket:
            raise ValueError("S3 bucket is required for export upload")
        self.s3_config = s3_config
        self.prefix = (prefix if prefix is not None else s3_config.export_prefix).strip("/")
        self._session = None
        self._s3_ctx: Any = None
        self._s3_client: Any = None

    async def start(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return
        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.s3_config.region,
        }
        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url
        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def build_key(self, database: str, file_name: str) -> str:
        parts = [self.prefix] if self.prefix else []
        parts += [f"database={database}", file_name]
        return "/".join(parts)

    async def upload(self, path: Path, database: str, state_path: Path | None = None) -> str:
        """Upload a dump file (and optionally the state file after it).

        Returns:
            S3 key of the dump file
        """
        await self.start()

        key = self.build_key(database, path.name)
        body = path.read_bytes()
        await self._s3_client.put_object(
            Bucket=self.s3_config.bucket,
            Key=key,
            Body=body,
            ContentType="application/x-gzip",
        )

        if state_path is not None and state_path.exists():
            await self._s3_client.put_object(
                Bucket=self.s3_config.bucket,
                Key=self.build_key(database, state_path.name),
                Body=state_path.read_bytes(),
                ContentType="application/json",
            )

        logger.info(
            "Uploaded export file",
            extra={
                "database": database,
                "bucket": self.s3_config.bucket,
                "s3_key": key,
                "size_bytes": len(body),
            },
        )
        return key
