"""
Continuation tracking for resumable imports.

A continuation token names one logical transfer (e.g. "replica-sync").
For each token the target store keeps the highest etag applied so far and
the dump files already applied, as a system document:

    smuggler/continuations/<token>
    {"Watermark": "01000000-...", "Files": {"<dump file name>": "01000000-..."}}

Invariants:
    - A file is skipped only if every etag it contains is <= the watermark
      (or the same file was already recorded with the same max etag)
    - Progress is saved only after a whole file has been applied, so a crash
      mid-file re-applies that file instead of losing it
    - Without a token nothing is ever skipped

How to change safely:
    - Watermarks only move forward; never lower one on record
    - Keep the stored layout readable by older importers
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import CorruptInputError, FormatError
from ..etag import Etag, highest_etag

if TYPE_CHECKING:
    from .transport import SmugglerTransport

logger = logging.getLogger(__name__)

CONTINUATION_PREFIX = "smuggler/continuations/"


@dataclass
class ContinuationState:
    """Progress recorded for one token.

    Attributes:
        watermark: Highest source etag applied through
        files: Applied dump file name -> highest etag it contained
    """

    watermark: Etag = Etag.EMPTY
    files: dict[str, Etag] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "Watermark": str(self.watermark),
            "Files": {name: str(etag) for name, etag in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContinuationState:
        try:
            return cls(
                watermark=Etag.parse_optional(data.get("Watermark")) or Etag.EMPTY,
                files={name: Etag.parse(e) for name, e in (data.get("Files") or {}).items()},
            )
        except FormatError as e:
            raise CorruptInputError(f"Invalid continuation state: {e.message}") from e


class ContinuationTracker:
    """Decides which dump files a token has already applied.

    Example:
        >>> tracker = ContinuationTracker(target)
        >>> if not await tracker.should_skip("Token", name, max_etag):
        ...     await apply_file(name)
        ...     await tracker.record_applied("Token", name, max_etag)
    """

    def __init__(self, transport: SmugglerTransport) -> None:
        self._transport = transport
        self._states: dict[str, ContinuationState] = {}

    async def get_state(self, token: str) -> ContinuationState:
        if token not in self._states:
            data = await self._transport.load_continuation(token)
            self._states[token] = ContinuationState.from_dict(data) if data else ContinuationState()
        return self._states[token]

    async def should_skip(self, token: str | None, file_identity: str, max_etag: Etag) -> bool:
        """Whether the file's content is already applied for this token."""
        if token is None:
            return False
        state = await self.get_state(token)
        if state.files.get(file_identity) == max_etag:
            return True
        return max_etag <= state.watermark

    async def record_applied(
        self,
        token: str | None,
        file_identity: str,
        max_etag: Etag,
    ) -> ContinuationState | None:
        """Persist that file_identity was applied through max_etag."""
        if token is None:
            return None
        state = await self.get_state(token)
        state.files[file_identity] = max_etag
        state.watermark = highest_etag(state.watermark, max_etag)
        await self._transport.save_continuation(token, state.to_dict())

        logger.debug(
            "Recorded continuation progress",
            extra={"token": token, "file": file_identity, "watermark": str(state.watermark)},
        )
        return state
