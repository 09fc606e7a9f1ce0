# raftcore

Building blocks of the Raft consensus algorithm:

- a replicated log (`raftcore.raftlog.RaftLog`). It combines entries already
  in stable storage with an in-memory unstable tail
  (`raftcore.unstable.Unstable`). The tail holds new entries and an optional
  incoming snapshot until they are persisted.
- membership changes (`raftcore.confchange.Changer`). These cover simple
  changes and joint consensus, and reject invalid configurations before they
  take effect.
- a small pluggable logger (`raftcore.logger`).

## Installation

```
pip install raftcore
```

The package has no runtime dependencies. To run the test suite, install the
test extra:

```
pip install "raftcore[test]"
pytest
```

## Log entries

`raftcore.entries` defines the data the log works with:

- `Entry`, `EntryType` and `EntryID`
- `Snapshot` and `SnapshotMetadata`
- `LogSlice`
- `NO_LIMIT`

`ents_size` totals the encoded size of a batch of entries. `limit_size`
returns the longest prefix that fits a byte limit, and always keeps at least
one entry.

Storage lookups outside the available range raise one of two errors, both
subclasses of `StorageError`:

- `CompactedError`: the index was compacted away.
- `UnavailableError`: the index is not stored yet.

## The raft log

`RaftLog` reads persisted entries through any object that follows the
`Storage` protocol. That protocol has five methods: `first_index`,
`last_index`, `term`, `entries` and `snapshot`.

The log tracks three positions: `committed`, `applying` and `applied`.

```python
from raftcore.entries import Entry, EntryID
from raftcore.raftlog import RaftLog

log = RaftLog(storage)
log.append([Entry(term=1, index=1), Entry(term=1, index=2)])
log.maybe_commit(EntryID(term=1, index=2))

for entry in log.next_committed_ents(allow_unstable=True):
    ...
```

Reading the log:

- `term` raises `CompactedError` or `UnavailableError` for indexes outside
  the log. `term_or_zero` returns 0 for those indexes instead.
- `slice` returns the entries in a range, bounded by a byte size.
- `scan` passes the entries in a range to a callback in pages of that size.

Writing and tracking progress:

- `maybe_append` appends a `LogSlice` only if its `prev` entry matches the
  log. It returns the last new index, or `None` when nothing was appended.
- `stable_to`, `stable_snap_to` and `accept_unstable` record how far the
  unstable tail has been persisted.
- `applied_to` and `accept_applying` record how far entries have been applied.
  `RaftLog` can be given `max_applying_ents_size`, which caps the total size
  of entries that are being applied at once.

When an invariant is broken, for example committing past the last index, the
log calls its logger's `panic`. With the default logger this raises
`LogPanic`.

## Configuration changes

```python
from raftcore.confchange import (
    Changer, ConfChangeSingle, ConfChangeType, ProgressTracker, describe,
)

changer = Changer(tracker=ProgressTracker(max_inflight=10), last_index=0)
cfg, progress = changer.simple(ConfChangeSingle(ConfChangeType.ADD_NODE, 1))
changer.tracker.config, changer.tracker.progress = cfg, progress

cfg, progress = changer.enter_joint(
    False,
    ConfChangeSingle(ConfChangeType.ADD_NODE, 2),
    ConfChangeSingle(ConfChangeType.ADD_LEARNER_NODE, 3),
)
```

Making changes:

- `simple` applies changes that alter the incoming voter set by at most one.
- For larger changes, call `enter_joint` first and `leave_joint` afterwards.

Every method works on a copy of the tracker's configuration and returns a new
`(Config, progress)` pair. The caller decides whether to install that pair.
An invalid change raises `ConfChangeError`.

Other functions:

- `restore(changer, conf_state)` rebuilds a configuration, joint or not, from
  a `ConfState`.
- `ProgressTracker.conf_state()` goes the other way and returns a `ConfState`
  with sorted id lists.
- `describe(*changes)` renders changes as text, for example
  `ConfChangeAddNode(1) ConfChangeRemoveNode(2)`.

## Logging

The library logs through a shared logger:

- `get_logger()` returns it.
- `set_logger()` replaces it.
- `reset_default_logger()` restores the default.

`DefaultLogger` writes to standard error unless it is given another stream.
Debug output is off until you call `enable_debug()`. `enable_timestamps()`
prefixes each line with the date and time. `panic` raises `LogPanic`, and
`fatal` exits with status 1.

## What this package does not do

- It provides no `Storage` implementation. You supply one, whether in memory
  or on disk.
- It has no node, election, message-passing or networking layer. It contains
  only the log and membership-configuration components.