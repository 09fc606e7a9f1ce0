"""Pluggable logging used throughout the consensus core."""

from __future__ import annotations

import sys
import threading
from datetime import datetime
from typing import Any, Optional, Protocol, TextIO

_TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S"


class LogPanic(RuntimeError):
    """Raised when a logger is asked to panic: an invariant has been broken."""


class _Logger(Protocol):
    def debug(self, msg: Any, *args: Any) -> None: ...

    def info(self, msg: Any, *args: Any) -> None: ...

    def warning(self, msg: Any, *args: Any) -> None: ...

    def error(self, msg: Any, *args: Any) -> None: ...

    def fatal(self, msg: Any, *args: Any) -> None: ...

    def panic(self, msg: Any, *args: Any) -> None: ...


def _render(msg: Any, args: tuple) -> str:
    text = str(msg)
    return text % args if args else text


class DefaultLogger:
    """Writes leveled log lines to a text stream (standard error by default)."""

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        prefix: str = "",
        timestamps: bool = False,
    ) -> None:
        self._stream = stream
        self.prefix = prefix
        self.timestamps = timestamps
        self.debug_enabled = False
        self._lock = threading.Lock()

    def enable_timestamps(self) -> None:
        """Prefix every line with the local date and time."""
        self.timestamps = True

    def enable_debug(self) -> None:
        """Start emitting debug-level lines."""
        self.debug_enabled = True

    def _output(self, text: str) -> None:
        stamp = datetime.now().strftime(_TIMESTAMP_FORMAT) + " " if self.timestamps else ""
        line = f"{self.prefix}{stamp}{text}"
        if not line.endswith("\n"):
            line += "\n"
        stream = self._stream if self._stream is not None else sys.stderr
        with self._lock:
            stream.write(line)
            stream.flush()

    def _leveled(self, level: str, msg: Any, args: tuple) -> None:
        self._output(f"{level}: {_render(msg, args)}")

    def debug(self, msg: Any, *args: Any) -> None:
        if self.debug_enabled:
            self._leveled("DEBUG", msg, args)

    def info(self, msg: Any, *args: Any) -> None:
        self._leveled("INFO", msg, args)

    def warning(self, msg: Any, *args: Any) -> None:
        self._leveled("WARN", msg, args)

    def error(self, msg: Any, *args: Any) -> None:
        self._leveled("ERROR", msg, args)

    def fatal(self, msg: Any, *args: Any) -> None:
        """Log the message and terminate with exit status 1."""
        self._leveled("FATAL", msg, args)
        raise SystemExit(1)

    def panic(self, msg: Any, *args: Any) -> None:
        """Log the message and raise :class:`LogPanic` carrying it."""
        text = _render(msg, args)
        self._output(text)
        raise LogPanic(text)


_DEFAULT_LOGGER = DefaultLogger(prefix="raft", timestamps=True)
_logger_lock = threading.Lock()
_current_logger: _Logger = _DEFAULT_LOGGER


def set_logger(logger: _Logger) -> None:
    """Install the logger used by components that were not given one."""
    global _current_logger
    with _logger_lock:
        _current_logger = logger


def reset_default_logger() -> None:
    """Restore the built-in logger."""
    set_logger(_DEFAULT_LOGGER)


def get_logger() -> _Logger:
    """Return the currently installed logger."""
    with _logger_lock:
        return _current_logger