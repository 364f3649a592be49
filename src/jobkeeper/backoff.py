"""Bounded, process-local bookkeeping for items that keep failing the same way.

An item that fails ``max_attempts`` times is skipped until either
``reset_after_sec`` passes since its last attempt or
``force_retry_after_sec`` passes since its first failure. When either window
opens the entry is forgotten, so the next failure is reported as a first
failure again.
"""
import logging
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class BackoffEntry:
    count: int
    last_attempt: float
    first_failure: float


class BackoffTracker:
    """Failure counts keyed by item id, capped at ``capacity`` entries.
    """

    def __init__(self, max_attempts: int = 3, reset_after_sec: float = 60 * 60,
                 force_retry_after_sec: float = 24 * 60 * 60, capacity: int = 500,
                 clock: callable = time.monotonic):
        self.max_attempts = max_attempts
        self.reset_after_sec = reset_after_sec
        self.force_retry_after_sec = force_retry_after_sec
        self.capacity = capacity
        self.clock = clock
        self._entries: dict[str, BackoffEntry] = {}
        self._lock = threading.Lock()

    def should_skip(self, key: str) -> bool:
        """True while the item is in backoff.

        Drops the entry once a retry window has opened.
        """
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.count < self.max_attempts:
                return False
            if now - entry.last_attempt >= self.reset_after_sec:
                del self._entries[key]
                return False
            if now - entry.first_failure >= self.force_retry_after_sec:
                del self._entries[key]
                return False
            return True

    def record_failure(self, key: str) -> int:
        """Count one failure and return the running count.
        """
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = BackoffEntry(count=0, last_attempt=now, first_failure=now)
                self._entries[key] = entry
            entry.count += 1
            entry.last_attempt = now
            if len(self._entries) > self.capacity:
                self._evict_oldest()
            return entry.count

    def record_success(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _evict_oldest(self) -> None:
        oldest = min(self._entries, key=lambda k: self._entries[k].last_attempt)
        del self._entries[oldest]
        logger.debug(f'Backoff capacity {self.capacity} reached, evicted {oldest}')

    def entries(self) -> dict[str, BackoffEntry]:
        with self._lock:
            return {k: BackoffEntry(v.count, v.last_attempt, v.first_failure) for k, v in self._entries.items()}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
