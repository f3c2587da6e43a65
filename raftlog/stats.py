"""Process-wide counters of live log entries."""

from __future__ import annotations

import threading

from raftlog.format import LogQueue


class GlobalStats:
    """Thread-safe entry counters for the append and rewrite queues."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live_append_entries = 0
        self._rewrite_entries = 0
        self._deleted_rewrite_entries = 0

    def add(self, queue: LogQueue, count: int) -> None:
        """Records ``count`` new entries in ``queue``."""
        with self._lock:
            if queue == LogQueue.APPEND:
                self._live_append_entries += count
            else:
                self._rewrite_entries += count

    def delete(self, queue: LogQueue, count: int) -> None:
        """Records that ``count`` entries of ``queue`` became obsolete."""
        with self._lock:
            if queue == LogQueue.APPEND:
                self._live_append_entries -= count
            else:
                self._deleted_rewrite_entries += count

    def rewrite_entries(self) -> int:
        with self._lock:
            return self._rewrite_entries

    def deleted_rewrite_entries(self) -> int:
        with self._lock:
            return self._deleted_rewrite_entries

    def reset_rewrite_counters(self) -> None:
        """Drops the deleted rewrite entries from both rewrite counters."""
        with self._lock:
            deleted = self._deleted_rewrite_entries
            self._deleted_rewrite_entries -= deleted
            self._rewrite_entries -= deleted

    def live_entries(self, queue: LogQueue) -> int:
        """Returns the number of entries still alive in ``queue``."""
        with self._lock:
            if queue == LogQueue.APPEND:
                return self._live_append_entries
            return max(0, self._rewrite_entries - self._deleted_rewrite_entries)