"""Log entries, snapshots and the errors raised when reading them."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

NO_LIMIT = 2**64 - 1
"""Size limit meaning "unbounded"."""


def _varint_len(value: int) -> int:
    return max(1, (value.bit_length() + 6) // 7)


class EntryType(enum.IntEnum):
    NORMAL = 0
    CONF_CHANGE = 1
    CONF_CHANGE_V2 = 2


@dataclass(frozen=True)
class EntryID:
    """Identifies a log entry by its (term, index) pair."""

    term: int = 0
    index: int = 0


@dataclass(frozen=True)
class Entry:
    term: int = 0
    index: int = 0
    type: EntryType = EntryType.NORMAL
    data: Optional[bytes] = None

    def size(self) -> int:
        """Encoded size of the entry in bytes."""
        n = 3 + _varint_len(int(self.type)) + _varint_len(self.term) + _varint_len(self.index)
        if self.data is not None:
            length = len(self.data)
            n += 1 + length + _varint_len(length)
        return n

    def entry_id(self) -> EntryID:
        return EntryID(term=self.term, index=self.index)


@dataclass(frozen=True)
class SnapshotMetadata:
    index: int = 0
    term: int = 0


@dataclass(frozen=True)
class Snapshot:
    data: bytes = b""
    metadata: SnapshotMetadata = SnapshotMetadata()


@dataclass
class LogSlice:
    """A run of entries following ``prev``, proposed by a leader at ``term``."""

    term: int = 0
    prev: EntryID = EntryID()
    entries: list[Entry] = field(default_factory=list)

    @property
    def last_index(self) -> int:
        return self.prev.index + len(self.entries)


class StorageError(Exception):
    """Base class for log storage read errors."""


class CompactedError(StorageError):
    def __init__(self, message: str = "requested index has been compacted") -> None:
        super().__init__(message)


class UnavailableError(StorageError):
    def __init__(self, message: str = "requested entry is not available") -> None:
        super().__init__(message)


def ents_size(entries: Iterable[Entry]) -> int:
    """Total encoded size of the entries."""
    return sum(entry.size() for entry in entries)


def limit_size(entries: Sequence[Entry], max_size: int) -> list[Entry]:
    """Longest prefix whose total size stays within ``max_size``; never fewer than one entry."""
    if not entries:
        return []
    total = entries[0].size()
    for limit, entry in enumerate(entries[1:], start=1):
        total += entry.size()
        if total > max_size:
            return list(entries[:limit])
    return list(entries)