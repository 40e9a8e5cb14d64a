"""Append-only, time-ordered log stream consumed by the UI."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator

from azext_mate.deploy.models import LogEntry, LogKind

logger = logging.getLogger(__name__)

LogListener = Callable[[LogEntry], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LogStream:
    """Ordered sequence of :class:`LogEntry` objects.

    The owning session is the only writer.  Timestamps never decrease in
    arrival order: if the wall clock steps backwards, the entry reuses the
    previous timestamp.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or _utc_now
        self._entries: list[LogEntry] = []
        self._listeners: list[LogListener] = []
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def append(
        self,
        message: str,
        kind: LogKind = LogKind.INFO,
        *,
        source: str = "",
        category: str = "",
    ) -> LogEntry:
        """Create, store, and broadcast a new entry."""
        with self._lock:
            now = self._clock()
            if self._last is not None and now < self._last:
                now = self._last
            self._last = now
            entry = LogEntry(
                message=message,
                kind=kind,
                timestamp=now.isoformat(timespec="milliseconds"),
                source=source,
                category=category,
            )
            self._entries.append(entry)
            listeners = list(self._listeners)

        for listener in listeners:
            listener(entry)
        return entry

    @contextmanager
    def subscribe(self, listener: LogListener) -> Iterator[None]:
        """Register *listener* for new entries for the duration of the block."""
        with self._lock:
            self._listeners.append(listener)
        try:
            yield
        finally:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

    def entries(self) -> list[LogEntry]:
        """Snapshot of all entries in arrival order."""
        with self._lock:
            return list(self._entries)

    def since(self, index: int) -> list[LogEntry]:
        """Entries appended after the first *index* ones (for polling UIs)."""
        with self._lock:
            return list(self._entries[index:])

    @property
    def last(self) -> LogEntry | None:
        with self._lock:
            return self._entries[-1] if self._entries else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries())
