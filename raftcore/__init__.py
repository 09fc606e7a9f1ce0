"""Raft consensus building blocks: the replicated log, its unstable tail, configuration changes and logging."""

__version__ = "0.1.0"
__all__ = ["confchange", "entries", "logger", "raftlog", "unstable"]