"""
Smuggler options and the batch size governor.

SmugglerOptions belong to a pipeline instance and live across runs (the
governed batch size is written back into them). ExportOptions and
ImportOptions describe a single run.

Invariants:
    - effective batch size = min(requested, server max), or server max if unset
    - The server max is read once per run, at session start
    - The governed value is written back to SmugglerOptions.batch_size

How to change safely:
    - Never raise the effective size above the server max
    - Keep option defaults compatible with existing CLI invocations
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..etag import Etag

if TYPE_CHECKING:
    from .transport import SmugglerTransport

logger = logging.getLogger(__name__)


@dataclass
class SmugglerOptions:
    """Options shared by every run of a pipeline.

    Attributes:
        batch_size: Requested batch size (None = server max). Overwritten with
            the governed value at the start of each run.
        continuation_token: Import resume token (None = no skipping)
    """

    batch_size: int | None = None
    continuation_token: str | None = None


@dataclass
class ExportOptions:
    """Options for one export run.

    Attributes:
        to_file: Target dump file (single-file export)
        to_directory: Target directory of dated dump files
        start_docs_etag: Exclusive lower bound for documents when no state is used
        start_docs_deletion_etag: Exclusive lower bound for deletions when no state is used
        max_docs_etag: Inclusive ceiling for documents (None = open-ended)
        max_docs_deletion_etag: Inclusive ceiling for deletions (None = open-ended)
        incremental: For directory exports, continue from the state file
            (False writes a full dump and resets the state)
    """

    to_file: str | None = None
    to_directory: str | None = None
    start_docs_etag: Etag = Etag.EMPTY
    start_docs_deletion_etag: Etag = Etag.EMPTY
    max_docs_etag: Etag | None = None
    max_docs_deletion_etag: Etag | None = None
    incremental: bool = True

    def __post_init__(self) -> None:
        if (self.to_file is None) == (self.to_directory is None):
            raise ValueError("Exactly one of to_file or to_directory is required")


@dataclass
class ImportOptions:
    """Options for one import run.

    Attributes:
        from_file: Source dump file
        from_directory: Source directory of incremental dumps
        purge_source: Transport to the exporting store; when set, tombstones up
            to the highest applied deletion etag are purged there afterwards
    """

    from_file: str | None = None
    from_directory: str | None = None
    purge_source: SmugglerTransport | None = None

    def __post_init__(self) -> None:
        if (self.from_file is None) == (self.from_directory is None):
            raise ValueError("Exactly one of from_file or from_directory is required")


class BatchSizeGovernor:
    """Resolves the batch size used for a run."""

    @staticmethod
    def resolve(requested: int | None, server_max: int) -> int:
        """min(requested, server_max), or server_max when nothing was requested.

        Raises:
            ValueError: If either value is not positive
        """
        if server_max <= 0:
            raise ValueError(f"Server batch ceiling must be positive, got {server_max}")
        if requested is None:
            return server_max
        if requested <= 0:
            raise ValueError(f"Batch size must be positive, got {requested}")
        return min(requested, server_max)

    @classmethod
    async def govern(cls, options: SmugglerOptions, transport: SmugglerTransport) -> int:
        """Read the server max once and write the governed size into options."""
        server_max = await transport.get_max_batch_size()
        effective = cls.resolve(options.batch_size, server_max)
        if options.batch_size is not None and effective != options.batch_size:
            logger.info(
                "Batch size capped by server",
                extra={"requested": options.batch_size, "server_max": server_max},
            )
        options.batch_size = effective
        return effective
