# history.py
# Bounded per-correlation-id execution history.
#
# One deque and one lock per correlation id, stored together as a single
# entry so a lookup never sees one without the other. The registry lock is
# held only to create or drop an entry, so concurrent runs never contend on
# append or evict.

import logging
import threading
from collections import deque

from selfheal.models import ToolExecutionResult

logger = logging.getLogger(__name__)


class HistoryStore:
    """Append-only, FIFO-trimmed ring buffers keyed by correlation id."""

    def __init__(self, max_size: int = 100) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1.")
        self._max_size = max_size
        self._entries: dict[str, tuple[deque[ToolExecutionResult], threading.Lock]] = {}
        self._registry_lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def _entry(self, correlation_id: str) -> tuple[deque, threading.Lock]:
        entry = self._entries.get(correlation_id)
        if entry is None:
            with self._registry_lock:
                entry = self._entries.get(correlation_id)
                if entry is None:
                    entry = (deque(maxlen=self._max_size), threading.Lock())
                    self._entries[correlation_id] = entry
        return entry

    def append(self, correlation_id: str, result: ToolExecutionResult) -> None:
        buffer, lock = self._entry(correlation_id)
        with lock:
            if len(buffer) == self._max_size:
                logger.debug("History for %s full (%d); evicting oldest entry.",
                             correlation_id, self._max_size)
            buffer.append(result)

    def get(self, correlation_id: str) -> list[ToolExecutionResult]:
        """Snapshot, oldest first. Unknown ids give an empty list."""
        entry = self._entries.get(correlation_id)
        if entry is None:
            return []
        buffer, lock = entry
        with lock:
            return list(buffer)

    def correlation_ids(self) -> list[str]:
        with self._registry_lock:
            return list(self._entries)

    def clear(self, correlation_id: str) -> None:
        with self._registry_lock:
            self._entries.pop(correlation_id, None)
