"""Log entries and snapshot not yet written to stable storage."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from raftcore.entries import Entry, EntryID, Snapshot
from raftcore.logger import get_logger


@dataclass
class Unstable:
    """Holds new entries and an optional snapshot until storage has made them durable.

    ``entries[i]`` has log position ``i + offset``. Entries below
    ``offset_in_progress`` have been handed off for writing already.
    """

    snapshot: Optional[Snapshot] = None
    entries: list[Entry] = field(default_factory=list)
    offset: int = 0
    snapshot_in_progress: bool = False
    offset_in_progress: int = 0
    logger: Any = None

    @property
    def _log(self) -> Any:
        return self.logger if self.logger is not None else get_logger()

    def maybe_first_index(self) -> Optional[int]:
        """Index of the first possible entry, known only when a snapshot is held."""
        if self.snapshot is not None:
            return self.snapshot.metadata.index + 1
        return None

    def maybe_last_index(self) -> Optional[int]:
        """Last index held, or None if there are neither entries nor a snapshot."""
        if self.entries:
            return self.offset + len(self.entries) - 1
        if self.snapshot is not None:
            return self.snapshot.metadata.index
        return None

    def maybe_term(self, index: int) -> Optional[int]:
        """Term of the entry at ``index``, or None if it is not held here."""
        if index < self.offset:
            if self.snapshot is not None and self.snapshot.metadata.index == index:
                return self.snapshot.metadata.term
            return None
        last = self.maybe_last_index()
        if last is None or index > last:
            return None
        return self.entries[index - self.offset].term

    def next_entries(self) -> list[Entry]:
        """Entries not yet handed off for writing."""
        in_progress = self.offset_in_progress - self.offset
        if len(self.entries) == in_progress:
            return []
        return self.entries[in_progress:]

    def next_snapshot(self) -> Optional[Snapshot]:
        """The snapshot, if held and not yet handed off for writing."""
        if self.snapshot is None or self.snapshot_in_progress:
            return None
        return self.snapshot

    def accept_in_progress(self) -> None:
        """Mark all current entries and the snapshot as being written."""
        if self.entries:
            self.offset_in_progress = self.entries[-1].index + 1
        if self.snapshot is not None:
            self.snapshot_in_progress = True

    def stable_to(self, entry_id: EntryID) -> None:
        """Drop entries up to ``entry_id`` once they are durable in storage."""
        term = self.maybe_term(entry_id.index)
        if term is None:
            self._log.info("entry at index %d missing from unstable log; ignoring", entry_id.index)
            return
        if entry_id.index < self.offset:
            self._log.info("entry at index %d matched unstable snapshot; ignoring", entry_id.index)
            return
        if term != entry_id.term:
            self._log.info(
                "entry at (index,term)=(%d,%d) mismatched with entry at (%d,%d) in unstable log; ignoring",
                entry_id.index,
                entry_id.term,
                entry_id.index,
                term,
            )
            return
        self.entries = self.entries[entry_id.index + 1 - self.offset :]
        self.offset = entry_id.index + 1
        self.offset_in_progress = max(self.offset_in_progress, self.offset)

    def stable_snap_to(self, index: int) -> None:
        """Drop the snapshot once a snapshot at ``index`` is durable."""
        if self.snapshot is not None and self.snapshot.metadata.index == index:
            self.snapshot = None
            self.snapshot_in_progress = False

    def restore(self, snapshot: Snapshot) -> None:
        """Replace everything held with ``snapshot``."""
        self.offset = snapshot.metadata.index + 1
        self.offset_in_progress = self.offset
        self.entries = []
        self.snapshot = snapshot
        self.snapshot_in_progress = False

    def truncate_and_append(self, entries: Sequence[Entry]) -> None:
        """Append ``entries``, first discarding any held entries they overwrite."""
        if not entries:
            raise ValueError("no entries to append")
        from_index = entries[0].index
        if from_index == self.offset + len(self.entries):
            self.entries = [*self.entries, *entries]
        elif from_index <= self.offset:
            self._log.info("replace the unstable entries from index %d", from_index)
            self.entries = list(entries)
            self.offset = from_index
            self.offset_in_progress = self.offset
        else:
            self._log.info("truncate the unstable entries before index %d", from_index)
            self.entries = [*self.slice(self.offset, from_index), *entries]
            self.offset_in_progress = min(self.offset_in_progress, from_index)

    def slice(self, lo: int, hi: int) -> list[Entry]:
        """Entries with indexes in ``[lo, hi)``; the whole range must be held."""
        self._check_bounds(lo, hi)
        return self.entries[lo - self.offset : hi - self.offset]

    def _check_bounds(self, lo: int, hi: int) -> None:
        if lo > hi:
            self._log.panic("invalid unstable.slice %d > %d", lo, hi)
        upper = self.offset + len(self.entries)
        if lo < self.offset or hi > upper:
            self._log.panic("unstable.slice[%d,%d) out of bound [%d,%d]", lo, hi, self.offset, upper)