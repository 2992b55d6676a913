"""
In-memory log tail for the supervisor and its worker.

Keeps the most recent lines in a bounded deque so the control API can serve
them without touching disk. Oldest entries are evicted first.
"""

import threading
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from .models import LogEntry

DEFAULT_TAIL = 200
MIN_TAIL = 10


class LogBuffer:
    """Fixed-capacity ring of log entries."""

    def __init__(self, limit: int):
        self._entries: deque[LogEntry] = deque(maxlen=limit)
        self._lock = threading.Lock()
        self.limit = limit

    def append(self, stream: str, line: str) -> LogEntry:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        entry = LogEntry(ts=timestamp.replace("+00:00", "Z"), stream=stream, line=line)
        with self._lock:
            self._entries.append(entry)
        return entry

    def tail(self, count: int) -> list[LogEntry]:
        """Get the last `count` entries, oldest first."""
        with self._lock:
            entries = list(self._entries)
        if count <= 0:
            return []
        return entries[-count:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def resolve_log_tail(tail_raw: Optional[str], max_tail: int, fallback: int = DEFAULT_TAIL) -> int:
    """Turn the ?tail= query value into a count clamped to [10, max_tail]."""
    tail = fallback
    if tail_raw:
        try:
            tail = int(tail_raw.strip(), 10)
        except ValueError:
            tail = fallback
    return min(max(tail, MIN_TAIL), max_tail)
