"""
Export checkpoint state (OperationState / LastEtagsInfo).

An incremental export directory holds one state file next to its dumps:

    IncrementalExport.state.json
    {
        "LastDocEtag": "01000000-0000-0001-0000-00000000000B",
        "LastDocDeleteEtag": "01000000-0000-0001-0000-000000000009",
        "LastAttachmentsEtag": null,
        "Files": {"2026-01-05-10-00-00-000000.incremental-dump": "01000000-..."}
    }

The next incremental export reads it for its lower bounds. "Files" maps each
dump file to the highest etag it contains, so importers can skip a file
without opening it.

Invariants:
    - The state file is replaced atomically (temp file + os.replace)
    - It is written only after the dump file is complete
    - A legacy file with only LastDocEtag reads as LastDocDeleteEtag = EMPTY

How to change safely:
    - Add new keys as optional; older importers ignore unknown keys
    - Never rename the existing keys
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import CorruptInputError, FormatError
from ..etag import Etag

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "IncrementalExport.state.json"


@dataclass
class LastEtagsInfo:
    """Upper bounds for one export run.

    Attributes:
        last_docs_etag: Document ceiling (None = open-ended)
        last_docs_delete_etag: Deletion ceiling (None = open-ended)
        last_attachments_etag: Kept for state-file compatibility only
    """

    last_docs_etag: Etag | None = None
    last_docs_delete_etag: Etag | None = None
    last_attachments_etag: Etag | None = None


@dataclass
class OperationState:
    """Result of an export run and the checkpoint for the next one.

    Attributes:
        file_path: Dump file written by the run (None if nothing was written)
        last_docs_etag: Last document etag covered by the run
        last_doc_delete_etag: Last deletion etag covered by the run
        last_attachments_etag: Carried through unchanged
        files: Dump file name -> highest etag it contains
    """

    file_path: str | None = None
    last_docs_etag: Etag = Etag.EMPTY
    last_doc_delete_etag: Etag = Etag.EMPTY
    last_attachments_etag: Etag | None = None
    files: dict[str, Etag] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "LastDocEtag": str(self.last_docs_etag),
            "LastDocDeleteEtag": str(self.last_doc_delete_etag),
            "LastAttachmentsEtag": (
                str(self.last_attachments_etag) if self.last_attachments_etag else None
            ),
            "Files": {name: str(etag) for name, etag in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], file_path: str | None = None) -> OperationState:
        """Parse a state document, accepting the legacy single-counter layout."""
        if "LastDocEtag" not in data:
            raise CorruptInputError("State file has no LastDocEtag", path=file_path)

        return cls(
            file_path=file_path,
            last_docs_etag=Etag.parse(data["LastDocEtag"]),
            last_doc_delete_etag=Etag.parse_optional(data.get("LastDocDeleteEtag")) or Etag.EMPTY,
            last_attachments_etag=Etag.parse_optional(data.get("LastAttachmentsEtag")),
            files={
                name: Etag.parse(etag) for name, etag in (data.get("Files") or {}).items()
            },
        )


def state_file_path(directory: str | Path) -> Path:
    return Path(directory) / STATE_FILE_NAME


def read_last_etags_from_file(directory: str | Path) -> OperationState | None:
    """Read the state file of an export directory.

    Returns:
        The stored state, or None if the directory has no state file

    Raises:
        CorruptInputError: If the state file cannot be parsed
    """
    path = state_file_path(directory)
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise CorruptInputError(f"Unreadable state file: {e}", path=str(path)) from e

    if not isinstance(data, dict):
        raise CorruptInputError("State file is not a JSON object", path=str(path))

    try:
        state = OperationState.from_dict(data, file_path=str(path))
    except FormatError as e:
        raise CorruptInputError(e.message, path=str(path)) from e

    if "LastDocDeleteEtag" not in data:
        logger.info(
            "Read legacy state file; every tombstone will be exported again",
            extra={"path": str(path), "last_docs_etag": str(state.last_docs_etag)},
        )
    return state


def write_last_etags_to_file(state: OperationState, directory: str | Path) -> Path:
    """Atomically replace the state file of an export directory."""
    path = state_file_path(directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(state.to_dict(), f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)

    logger.debug(
        "Wrote export state",
        extra={
            "path": str(path),
            "last_docs_etag": str(state.last_docs_etag),
            "last_doc_delete_etag": str(state.last_doc_delete_etag),
        },
    )
    return path
