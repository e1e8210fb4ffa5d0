"""
Dump file format: streaming writer and reader.

Single-file dump (a top-level array of documents):
    [
        {"name": "Ann", "@metadata": {"@id": "users/1", "@etag": "01000000-...",
                                      "@collection": "Users",
                                      "Last-Modified": "2026-01-05T10:00:00+00:00"}},
        ...
    ]

Directory dump, full or incremental (documents then deletions):
    {"Docs": [...], "DocsDeletions": [{"Key": "users/7", "Etag": "01000000-..."}]}

Files are gzip-compressed UTF-8 JSON; the reader also accepts plain JSON.
Directory exports name files by creation time:
    2026-01-05-10-00-00-000000.full-dump
    2026-01-05-10-05-00-000000.incremental-dump

Invariants:
    - Each document carries the etag the store assigned it, not one made up here
    - Writers produce <name>.tmp and rename on close; a crash never leaves a
      truncated file under the final name
    - Reader memory is bounded by the largest single entry, not the file
    - Malformed content raises CorruptInputError with the file path

How to change safely:
    - Readers must ignore unknown top-level keys
    - Add metadata fields, never rename @id / @etag
"""

from __future__ import annotations

import gzip
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any

import ijson
from ijson.common import ObjectBuilder

from ..errors import CorruptInputError, FormatError
from ..etag import Etag
from ..store.documents import RESERVED_METADATA, DocumentRecord

logger = logging.getLogger(__name__)

FULL_DUMP_EXTENSION = ".full-dump"
INCREMENTAL_DUMP_EXTENSION = ".incremental-dump"
DUMP_EXTENSIONS = (FULL_DUMP_EXTENSION, INCREMENTAL_DUMP_EXTENSION)

DOCS_PROPERTY = "Docs"
DELETIONS_PROPERTY = "DocsDeletions"

_GZIP_MAGIC = b"\x1f\x8b"
_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class DumpDocument:
    """A document read back from a dump.

    Attributes:
        key: Document key (@id)
        etag: Etag on the source store (@etag)
        payload: Document body
        metadata: Metadata minus the store-owned fields
    """

    key: str
    etag: Etag
    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DumpDeletion:
    """A deletion read back from a dump."""

    key: str
    etag: Etag

    def to_dict(self) -> dict[str, str]:
        return {"Key": self.key, "Etag": str(self.etag)}


DumpEntry = DumpDocument | DumpDeletion


class DumpKind(Enum):
    """Layout found by DumpReader: FULL is a bare document array, INCREMENTAL
    the {Docs, DocsDeletions} object. Directory full dumps use the object layout."""

    FULL = "full"
    INCREMENTAL = "incremental"


def document_to_dump(record: DocumentRecord) -> dict[str, Any]:
    """Serialize a stored document with its own etag stamped into @metadata."""
    metadata = dict(record.metadata)
    metadata["@id"] = record.key
    metadata["@etag"] = str(record.etag)
    metadata["Last-Modified"] = datetime.fromtimestamp(
        record.last_modified / 1000, tz=timezone.utc
    ).isoformat()

    doc = dict(record.payload)
    doc["@metadata"] = metadata
    return doc


def document_from_dump(obj: Any, path: str | None = None) -> DumpDocument:
    """Parse one serialized document.

    Raises:
        CorruptInputError: If the object is not a well-formed dump document
    """
    if not isinstance(obj, dict):
        raise CorruptInputError("Document entry is not an object", path=path)
    metadata = obj.get("@metadata")
    if not isinstance(metadata, dict):
        raise CorruptInputError("Document entry has no @metadata", path=path)
    key = metadata.get("@id")
    if not isinstance(key, str) or not key:
        raise CorruptInputError("Document entry has no @id", path=path)
    try:
        etag = Etag.parse(metadata.get("@etag"))
    except FormatError as e:
        raise CorruptInputError(f"Document {key!r}: {e.message}", path=path) from e

    return DumpDocument(
        key=key,
        etag=etag,
        payload={k: v for k, v in obj.items() if k != "@metadata"},
        metadata={k: v for k, v in metadata.items() if k not in RESERVED_METADATA},
    )


def deletion_from_dump(obj: Any, path: str | None = None) -> DumpDeletion:
    """Parse one serialized deletion.

    Raises:
        CorruptInputError: If the object is not {"Key": ..., "Etag": ...}
    """
    if not isinstance(obj, dict) or not isinstance(obj.get("Key"), str):
        raise CorruptInputError("Deletion entry has no Key", path=path)
    try:
        return DumpDeletion(key=obj["Key"], etag=Etag.parse(obj.get("Etag")))
    except FormatError as e:
        raise CorruptInputError(f"Deletion {obj['Key']!r}: {e.message}", path=path) from e


# ----------------------------------------------------------------------
# Writing
# ----------------------------------------------------------------------


class DumpWriter:
    """Streaming JSON writer with explicit structure calls.

    Example:
        >>> writer = DumpWriter(stream)
        >>> writer.write_start_object()
        >>> writer.write_property_name("Docs")
        >>> writer.write_start_array()
        >>> writer.write_value(document_to_dump(record))
        >>> writer.write_end_array()
        >>> writer.write_end_object()
    """

    def __init__(self, stream: IO[str]) -> None:
        self._stream = stream
        # One frame per open container: [is_array, items_written]
        self._frames: list[list[Any]] = []
        self._pending_name = False

    def _before_value(self) -> None:
        if not self._frames:
            return
        frame = self._frames[-1]
        if frame[0]:
            if frame[1]:
                self._stream.write(",")
            frame[1] += 1
        elif self._pending_name:
            self._pending_name = False
        else:
            raise ValueError("Property name required before a value inside an object")

    def write_start_array(self) -> None:
        self._before_value()
        self._stream.write("[")
        self._frames.append([True, 0])

    def write_end_array(self) -> None:
        if not self._frames or not self._frames[-1][0]:
            raise ValueError("No open array")
        self._frames.pop()
        self._stream.write("]")

    def write_start_object(self) -> None:
        self._before_value()
        self._stream.write("{")
        self._frames.append([False, 0])

    def write_end_object(self) -> None:
        if not self._frames or self._frames[-1][0] or self._pending_name:
            raise ValueError("No open object")
        self._frames.pop()
        self._stream.write("}")

    def write_property_name(self, name: str) -> None:
        if not self._frames or self._frames[-1][0] or self._pending_name:
            raise ValueError("Property names are only valid directly inside an object")
        frame = self._frames[-1]
        if frame[1]:
            self._stream.write(",")
        frame[1] += 1
        self._stream.write(json.dumps(name) + ":")
        self._pending_name = True

    def write_value(self, value: Any) -> None:
        self._before_value()
        self._stream.write(json.dumps(value, separators=(",", ":")))

    @property
    def depth(self) -> int:
        return len(self._frames)


@contextmanager
def open_dump(path: str | Path) -> Iterator[DumpWriter]:
    """Open a gzip dump for writing; the file appears under `path` only on success."""
    final_path = Path(path)
    final_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = final_path.with_name(final_path.name + ".tmp")

    try:
        with gzip.open(tmp_path, "wt", encoding="utf-8") as f:
            yield DumpWriter(f)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    os.replace(tmp_path, final_path)


def dump_file_name(full: bool, now: datetime | None = None) -> str:
    """Dated file name for a directory export."""
    now = now or datetime.now(timezone.utc)
    extension = FULL_DUMP_EXTENSION if full else INCREMENTAL_DUMP_EXTENSION
    return now.strftime("%Y-%m-%d-%H-%M-%S-%f") + extension


def new_dump_path(directory: str | Path, full: bool) -> Path:
    """A dump path in directory that does not exist yet."""
    directory = Path(directory)
    now = datetime.now(timezone.utc)
    path = directory / dump_file_name(full, now)
    while path.exists():
        now += timedelta(microseconds=1)
        path = directory / dump_file_name(full, now)
    return path


def list_dump_files(directory: str | Path) -> list[Path]:
    """Dump files of a directory in consumption order (last write, then name)."""
    directory = Path(directory)
    if not directory.is_dir():
        raise CorruptInputError("Import directory does not exist", path=str(directory))

    files = [
        p for p in directory.iterdir() if p.is_file() and p.name.endswith(DUMP_EXTENSIONS)
    ]
    return sorted(files, key=lambda p: (p.stat().st_mtime_ns, p.name))


# ----------------------------------------------------------------------
# Reading
# ----------------------------------------------------------------------

_CONTAINER_START = ("start_map", "start_array")
_CONTAINER_END = ("end_map", "end_array")


class DumpReader:
    """Incremental reader yielding DumpDocument / DumpDeletion entries.

    Entries come back in the order they were written. The file is parsed as
    an ijson event stream; only the entry being built is held in memory.

    Example:
        >>> with DumpReader(path) as reader:
        ...     for entry in reader:
        ...         apply(entry)
    """

    def __init__(self, path: str | Path, chunk_size: int = _CHUNK_SIZE) -> None:
        self.path = str(path)
        self.kind: DumpKind | None = None
        self._chunk_size = chunk_size
        self._file = self._open()
        self._entries = self._iter_entries()

    def _open(self) -> IO[bytes]:
        try:
            with open(self.path, "rb") as raw:
                magic = raw.read(2)
            if magic == _GZIP_MAGIC:
                return gzip.open(self.path, "rb")
            return open(self.path, "rb")
        except OSError as e:
            raise CorruptInputError(f"Cannot open dump: {e}", path=self.path) from e

    def close(self) -> None:
        self._entries.close()
        self._file.close()

    def __enter__(self) -> DumpReader:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __iter__(self) -> DumpReader:
        return self

    def __next__(self) -> DumpEntry:
        try:
            return next(self._entries)
        except ijson.JSONError as e:
            raise CorruptInputError(f"Malformed JSON: {e}", path=self.path) from e
        except (OSError, EOFError, UnicodeDecodeError) as e:
            raise CorruptInputError(f"Unreadable dump: {e}", path=self.path) from e

    def _iter_entries(self) -> Iterator[DumpEntry]:
        events = ijson.parse(self._file, buf_size=self._chunk_size, use_float=True)

        first = next(events, None)
        if first is None:
            raise CorruptInputError("Dump is empty", path=self.path)
        _, event, _ = first
        if event == "start_array":
            self.kind = DumpKind.FULL
            parsers = {"item": document_from_dump}
        elif event == "start_map":
            self.kind = DumpKind.INCREMENTAL
            parsers = {
                f"{DOCS_PROPERTY}.item": document_from_dump,
                f"{DELETIONS_PROPERTY}.item": deletion_from_dump,
            }
        else:
            raise CorruptInputError(f"Unexpected {event} at start of dump", path=self.path)

        builder: ObjectBuilder | None = None
        depth = 0
        parse = document_from_dump
        for prefix, event, value in events:
            if builder is not None:
                builder.event(event, value)
                if event in _CONTAINER_START:
                    depth += 1
                elif event in _CONTAINER_END:
                    depth -= 1
                if depth == 0:
                    yield parse(builder.value, self.path)
                    builder = None
                continue

            if prefix in (DOCS_PROPERTY, DELETIONS_PROPERTY) and self.kind is DumpKind.INCREMENTAL:
                if event not in ("start_array", "end_array"):
                    raise CorruptInputError(f"{prefix} must be an array", path=self.path)
                continue

            entry_parser = parsers.get(prefix)
            if entry_parser is None:
                continue
            parse = entry_parser
            if event in _CONTAINER_START:
                builder = ObjectBuilder()
                builder.event(event, value)
                depth = 1
            else:
                # A scalar where an entry belongs; the parser rejects it.
                yield parse(value, self.path)


def scan_max_etag(path: str | Path) -> Etag:
    """Highest etag in a dump (Etag.EMPTY for a dump without entries)."""
    highest = Etag.EMPTY
    with DumpReader(path) as reader:
        for entry in reader:
            if entry.etag > highest:
                highest = entry.etag
    return highest
