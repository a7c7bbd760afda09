"""Capped, append-only record of link activity."""
from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 200


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class FileSink(Protocol):
    def write_text(self, destination: str, text: str) -> bool:
        """Write a complete text blob to ``destination``; report success."""


@dataclass(frozen=True, slots=True)
class LogEntry:
    seq: int
    timestamp: str
    message: str

    def render(self) -> str:
        return f"[{self.timestamp}] {self.message}"


class EventLog:
    """Ring buffer of the most recent link events.

    Appends are serialised with a lock so that the scanner, the session and
    caller code can all write to the same log. Every entry is also forwarded to
    the module logger at ``level``.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        *,
        clock: Callable[[], datetime] | None = None,
        level: int = logging.INFO,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.level = level
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def append(self, message: str) -> LogEntry:
        with self._lock:
            entry = LogEntry(seq=next(self._counter), timestamp=self._timestamp(), message=message)
            self._entries.append(entry)
        logger.log(self.level, "%s", message)
        return entry

    def entries(self) -> List[LogEntry]:
        """Current entries, newest first."""
        with self._lock:
            return list(reversed(self._entries))

    def since(self, seq: int) -> List[LogEntry]:
        """Entries appended after ``seq``, oldest first."""
        with self._lock:
            return [entry for entry in self._entries if entry.seq > seq]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def render(self) -> str:
        return "\n".join(entry.render() for entry in self.entries())

    def export(self, sink: FileSink, destination: str) -> bool:
        text = self.render()
        try:
            ok = bool(sink.write_text(destination, text))
        except OSError as exc:
            self.append(f"Log Export Error: {exc}")
            return False
        if ok:
            self.append(f"Logs exported to: {destination}")
        else:
            self.append(f"Log Export Error: sink refused {destination}")
        return ok

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _timestamp(self) -> str:
        try:
            dt = self._clock()
        except Exception:  # pragma: no cover - guard against faulty clock
            dt = datetime.now(timezone.utc)
        if not isinstance(dt, datetime):
            return str(dt)
        return _ensure_utc(dt).isoformat(timespec="milliseconds")


__all__ = [
    "DEFAULT_CAPACITY",
    "EventLog",
    "FileSink",
    "LogEntry",
]
