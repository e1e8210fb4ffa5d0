"""
Etag type and sequence-cursor helpers.

An etag identifies one write in a database. It is 128 bits wide: an 8-byte
restart counter (bumped every time a store instance opens the database)
followed by an 8-byte change counter (bumped on every write).

Text form:
    01000000-0000-0001-0000-000000000007
    └─restarts─────┘└──changes─────────┘

Invariants:
    - For two etags of the same database, a < b iff a was assigned first
    - Comparison is lexicographic over (restarts, changes)
    - Etag.EMPTY sorts before every real etag
    - The compact 32-digit hex form sorts like the etag itself

How to change safely:
    - Never change the text layout; dump and state files embed it
    - New helpers must stay side-effect free
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from .errors import FormatError

_MAX_COUNTER = (1 << 64) - 1
_HEX_RE = re.compile(r"^[0-9a-fA-F]{32}$")


class Ordering(Enum):
    """Result of comparing two etags."""

    LESS = -1
    EQUAL = 0
    GREATER = 1


@dataclass(frozen=True, order=True)
class Etag:
    """A totally ordered change identifier.

    Attributes:
        restarts: Restart counter segment
        changes: Change counter segment

    Example:
        >>> etag = Etag.parse("01000000-0000-0001-0000-000000000007")
        >>> str(etag.increment_by(1))
        '01000000-0000-0001-0000-000000000008'
    """

    restarts: int
    changes: int

    EMPTY: ClassVar[Etag]

    def __post_init__(self) -> None:
        if not (0 <= self.restarts <= _MAX_COUNTER and 0 <= self.changes <= _MAX_COUNTER):
            raise FormatError(f"{self.restarts}:{self.changes}")

    @classmethod
    def parse(cls, value: str) -> Etag:
        """Parse the dashed (or compact) hex form.

        Raises:
            FormatError: If value is not a 32-digit hex etag
        """
        if not isinstance(value, str):
            raise FormatError(value)
        compact = value.strip().replace("-", "")
        if not _HEX_RE.match(compact):
            raise FormatError(value)
        return cls(restarts=int(compact[:16], 16), changes=int(compact[16:], 16))

    @classmethod
    def parse_optional(cls, value: str | None) -> Etag | None:
        """Parse value, mapping None or "" to None."""
        if value is None or value == "":
            return None
        return cls.parse(value)

    @property
    def is_empty(self) -> bool:
        return self == Etag.EMPTY

    def increment_by(self, amount: int) -> Etag:
        """Return the etag `amount` changes away from this one.

        Only for bookkeeping and tests; stores assign real etags.

        Raises:
            ValueError: If the change counter would leave its range
        """
        changes = self.changes + amount
        if changes < 0 or changes > _MAX_COUNTER:
            raise ValueError(f"Cannot increment {self} by {amount}")
        return Etag(self.restarts, changes)

    def compact(self) -> str:
        """32 hex digits, no dashes (the SQLite storage form)."""
        return f"{self.restarts:016X}{self.changes:016X}"

    def __str__(self) -> str:
        h = self.compact()
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:]}"

    def __repr__(self) -> str:
        return f"Etag('{self}')"


Etag.EMPTY = Etag(0, 0)


def compare(a: Etag, b: Etag) -> Ordering:
    """Three-way comparison of two etags."""
    if a < b:
        return Ordering.LESS
    if a > b:
        return Ordering.GREATER
    return Ordering.EQUAL


def is_within(etag: Etag, low: Etag, high: Etag | None) -> bool:
    """Whether low <= etag <= high; high=None means unbounded."""
    if etag < low:
        return False
    return high is None or etag <= high


def batch_ceiling(high_water: Etag, max_etag: Etag | None) -> Etag:
    """Upper bound for the next read batch.

    The ceiling is captured per batch, so a long-running export keeps
    observing writes that land while it runs, up to `max_etag`.
    """
    if max_etag is None:
        return high_water
    return min(high_water, max_etag)


def highest_etag(*etags: Etag | None) -> Etag:
    """Largest of the given etags, ignoring None (EMPTY if none given)."""
    present = [e for e in etags if e is not None]
    return max(present) if present else Etag.EMPTY
