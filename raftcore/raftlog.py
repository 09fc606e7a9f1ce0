"""The replicated log: stable storage plus the unstable tail not yet persisted."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, Sequence

from raftcore.entries import (
    NO_LIMIT,
    CompactedError,
    Entry,
    EntryID,
    LogSlice,
    Snapshot,
    StorageError,
    UnavailableError,
    ents_size,
    limit_size,
)
from raftcore.logger import get_logger
from raftcore.unstable import Unstable


class Storage(Protocol):
    """Read access to the durable part of the log.

    ``term`` and ``entries`` raise :class:`CompactedError` for indexes that were
    compacted away and :class:`UnavailableError` for indexes not yet stored.
    """

    def first_index(self) -> int: ...

    def last_index(self) -> int: ...

    def term(self, index: int) -> int: ...

    def entries(self, lo: int, hi: int, max_size: int) -> Sequence[Entry]: ...

    def snapshot(self) -> Snapshot: ...


class RaftLog:
    """The log as seen by a consensus node: durable entries followed by unstable ones.

    Invariants: ``applied <= applying <= committed``.
    """

    def __init__(
        self,
        storage: Storage,
        logger: Any = None,
        max_applying_ents_size: int = NO_LIMIT,
    ) -> None:
        first_index = storage.first_index()
        last_index = storage.last_index()
        self.storage = storage
        self.logger = logger
        self.unstable = Unstable(
            offset=last_index + 1,
            offset_in_progress=last_index + 1,
            logger=logger,
        )
        # Start from the point of the last compaction.
        self.committed = first_index - 1
        self.applying = first_index - 1
        self.applied = first_index - 1
        self.max_applying_ents_size = max_applying_ents_size
        self.applying_ents_size = 0
        self.applying_ents_paused = False

    @property
    def _log(self) -> Any:
        return self.logger if self.logger is not None else get_logger()

    def __str__(self) -> str:
        return (
            f"committed={self.committed}, applied={self.applied}, applying={self.applying}, "
            f"unstable.offset={self.unstable.offset}, "
            f"unstable.offsetInProgress={self.unstable.offset_in_progress}, "
            f"len(unstable.Entries)={len(self.unstable.entries)}"
        )

    def maybe_append(self, app: LogSlice, committed: int) -> Optional[int]:
        """Append ``app`` if its ``prev`` matches; return the last new index, or None."""
        if not self.match_term(app.prev):
            return None
        last_new = app.prev.index + len(app.entries)
        conflict = self.find_conflict(app.entries)
        if conflict == 0:
            pass
        elif conflict <= self.committed:
            self._log.panic(
                "entry %d conflict with committed entry [committed(%d)]", conflict, self.committed
            )
        else:
            offset = app.prev.index + 1
            if conflict - offset > len(app.entries):
                self._log.panic(
                    "index, %d, is out of range [%d]", conflict - offset, len(app.entries)
                )
            self.append(app.entries[conflict - offset :])
        self.commit_to(min(committed, last_new))
        return last_new

    def append(self, entries: Sequence[Entry]) -> int:
        """Append entries to the unstable tail and return the new last index."""
        if not entries:
            return self.last_index()
        after = entries[0].index - 1
        if after < self.committed:
            self._log.panic("after(%d) is out of range [committed(%d)]", after, self.committed)
        self.unstable.truncate_and_append(entries)
        return self.last_index()

    def find_conflict(self, entries: Sequence[Entry]) -> int:
        """Index of the first given entry that is new or conflicts, or 0 if all match."""
        for entry in entries:
            entry_id = entry.entry_id()
            if not self.match_term(entry_id):
                if entry_id.index <= self.last_index():
                    self._log.info(
                        "found conflict at index %d [existing term: %d, conflicting term: %d]",
                        entry_id.index,
                        self.term_or_zero(entry_id.index),
                        entry_id.term,
                    )
                return entry_id.index
        return 0

    def find_conflict_by_term(self, index: int, term: int) -> tuple[int, int]:
        """Largest ``i <= index`` whose term is ``<= term`` or unknown, with that term (0 if unknown)."""
        for candidate in range(index, 0, -1):
            try:
                our_term = self.term(candidate)
            except StorageError:
                return candidate, 0
            if our_term <= term:
                return candidate, our_term
        return 0, 0

    def next_unstable_ents(self) -> list[Entry]:
        return self.unstable.next_entries()

    def has_next_unstable_ents(self) -> bool:
        return bool(self.next_unstable_ents())

    def has_next_or_in_progress_unstable_ents(self) -> bool:
        return bool(self.unstable.entries)

    def next_committed_ents(self, allow_unstable: bool) -> list[Entry]:
        """Committed entries ready to be applied, within the outstanding size budget."""
        if self.applying_ents_paused or self.has_next_or_in_progress_snapshot():
            return []
        lo, hi = self.applying + 1, self.max_appliable_index(allow_unstable) + 1
        if lo >= hi:
            return []
        max_size = self.max_applying_ents_size - self.applying_ents_size
        if max_size <= 0:
            self._log.panic(
                "applying entry size (%d-%d)=%d not positive",
                self.max_applying_ents_size,
                self.applying_ents_size,
                max_size,
            )
        try:
            return self.slice(lo, hi, max_size)
        except StorageError as exc:
            self._log.panic("unexpected error when getting unapplied entries (%s)", exc)
            raise

    def has_next_committed_ents(self, allow_unstable: bool) -> bool:
        if self.applying_ents_paused or self.has_next_or_in_progress_snapshot():
            return False
        return self.applying + 1 < self.max_appliable_index(allow_unstable) + 1

    def max_appliable_index(self, allow_unstable: bool) -> int:
        hi = self.committed
        if not allow_unstable:
            hi = min(hi, self.unstable.offset - 1)
        return hi

    def next_unstable_snapshot(self) -> Optional[Snapshot]:
        return self.unstable.next_snapshot()

    def has_next_unstable_snapshot(self) -> bool:
        return self.unstable.next_snapshot() is not None

    def has_next_or_in_progress_snapshot(self) -> bool:
        return self.unstable.snapshot is not None

    def snapshot(self) -> Snapshot:
        if self.unstable.snapshot is not None:
            return self.unstable.snapshot
        return self.storage.snapshot()

    def first_index(self) -> int:
        index = self.unstable.maybe_first_index()
        if index is not None:
            return index
        return self.storage.first_index()

    def last_index(self) -> int:
        index = self.unstable.maybe_last_index()
        if index is not None:
            return index
        return self.storage.last_index()

    def commit_to(self, tocommit: int) -> None:
        """Raise the commit index to ``tocommit``; it never decreases."""
        if self.committed < tocommit:
            if self.last_index() < tocommit:
                self._log.panic(
                    "tocommit(%d) is out of range [lastIndex(%d)]. "
                    "Was the raft log corrupted, truncated, or lost?",
                    tocommit,
                    self.last_index(),
                )
            self.committed = tocommit

    def applied_to(self, index: int, size: int) -> None:
        if self.committed < index or index < self.applied:
            self._log.panic(
                "applied(%d) is out of range [prevApplied(%d), committed(%d)]",
                index,
                self.applied,
                self.committed,
            )
        self.applied = index
        self.applying = max(self.applying, index)
        self.applying_ents_size = max(self.applying_ents_size - size, 0)
        self.applying_ents_paused = self.applying_ents_size >= self.max_applying_ents_size

    def accept_applying(self, index: int, size: int, allow_unstable: bool) -> None:
        if self.committed < index:
            self._log.panic(
                "applying(%d) is out of range [prevApplying(%d), committed(%d)]",
                index,
                self.applying,
                self.committed,
            )
        self.applying = index
        self.applying_ents_size += size
        # Pause when over budget, or when the last batch was cut short by the limit.
        self.applying_ents_paused = (
            self.applying_ents_size >= self.max_applying_ents_size
            or index < self.max_appliable_index(allow_unstable)
        )

    def stable_to(self, entry_id: EntryID) -> None:
        self.unstable.stable_to(entry_id)

    def stable_snap_to(self, index: int) -> None:
        self.unstable.stable_snap_to(index)

    def accept_unstable(self) -> None:
        """Mark the current unstable entries and snapshot as being persisted."""
        self.unstable.accept_in_progress()

    def last_entry_id(self) -> EntryID:
        index = self.last_index()
        try:
            term = self.term(index)
        except StorageError as exc:
            self._log.panic("unexpected error when getting the last term at %d: %s", index, exc)
            raise
        return EntryID(term=term, index=index)

    def term(self, index: int) -> int:
        """Term of the entry at ``index``.

        The valid range is ``[first_index - 1, last_index]``; below it raises
        :class:`CompactedError`, above it :class:`UnavailableError`.
        """
        term = self.unstable.maybe_term(index)
        if term is not None:
            return term
        if index + 1 < self.first_index():
            raise CompactedError()
        if index > self.last_index():
            raise UnavailableError()
        return self.storage.term(index)

    def term_or_zero(self, index: int) -> int:
        """Term of the entry at ``index``, or 0 if it is compacted or unavailable."""
        try:
            return self.term(index)
        except (CompactedError, UnavailableError):
            return 0

    def entries(self, index: int, max_size: int) -> list[Entry]:
        if index > self.last_index():
            return []
        return self.slice(index, self.last_index() + 1, max_size)

    def all_entries(self) -> list[Entry]:
        while True:
            try:
                return self.entries(self.first_index(), NO_LIMIT)
            except CompactedError:
                # A compaction raced with the read; try again.
                continue

    def is_up_to_date(self, their: EntryID) -> bool:
        """Whether a log ending at ``their`` is at least as up to date as this one."""
        our = self.last_entry_id()
        return their.term > our.term or (their.term == our.term and their.index >= our.index)

    def match_term(self, entry_id: EntryID) -> bool:
        try:
            return self.term(entry_id.index) == entry_id.term
        except StorageError:
            return False

    def maybe_commit(self, at: EntryID) -> bool:
        # A zero term never matches: leaders campaign at term 1 or later.
        if at.term != 0 and at.index > self.committed and self.match_term(at):
            self.commit_to(at.index)
            return True
        return False

    def restore(self, snapshot: Snapshot) -> None:
        self._log.info(
            "log [%s] starts to restore snapshot [index: %d, term: %d]",
            self,
            snapshot.metadata.index,
            snapshot.metadata.term,
        )
        self.committed = snapshot.metadata.index
        self.unstable.restore(snapshot)

    def scan(
        self,
        lo: int,
        hi: int,
        page_size: int,
        visit: Callable[[list[Entry]], None],
    ) -> None:
        """Pass the entries in ``[lo, hi)`` to ``visit`` in pages of about ``page_size`` bytes.

        An exception raised by ``visit`` stops the scan and propagates.
        """
        while lo < hi:
            ents = self.slice(lo, hi, page_size)
            if not ents:
                raise StorageError(f"got 0 entries in [{lo}, {hi})")
            visit(ents)
            lo += len(ents)

    def slice(self, lo: int, hi: int, max_size: int) -> list[Entry]:
        """Entries in ``[lo, hi)`` limited to ``max_size`` bytes, but at least one."""
        self.must_check_out_of_bounds(lo, hi)
        if lo == hi:
            return []
        offset = self.unstable.offset
        if lo >= offset:
            return limit_size(self.unstable.slice(lo, hi), max_size)

        cut = min(hi, offset)
        try:
            ents = list(self.storage.entries(lo, cut, max_size))
        except UnavailableError:
            self._log.panic("entries[%d:%d) is unavailable from storage", lo, cut)
            raise
        if hi <= offset:
            return ents
        # Storage already truncated the result, so the size limit is reached.
        if len(ents) < cut - lo:
            return ents
        size = ents_size(ents)
        if size >= max_size:
            return ents
        tail = limit_size(self.unstable.slice(offset, hi), max_size - size)
        # A single tail entry may exceed the remaining budget; leave it out.
        if len(tail) == 1 and size + ents_size(tail) > max_size:
            return ents
        return ents + tail

    def must_check_out_of_bounds(self, lo: int, hi: int) -> None:
        """Check ``first_index <= lo <= hi <= last_index + 1``.

        Raises :class:`CompactedError` when ``lo`` was compacted; panics otherwise.
        """
        if lo > hi:
            self._log.panic("invalid slice %d > %d", lo, hi)
        first = self.first_index()
        if lo < first:
            raise CompactedError()
        length = self.last_index() + 1 - first
        if hi > first + length:
            self._log.panic("slice[%d,%d) out of bound [%d,%d]", lo, hi, first, self.last_index())