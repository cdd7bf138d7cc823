"""
Per-key mutual exclusion.

KeyedLock hands out one lock per fingerprint key. Entries are reference
counted and dropped once nobody holds or waits for them, so the table only
ever contains keys that are in flight.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from ..errors import FingerprintBusyError

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """Mutex per key, safe to share between worker threads."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the lock for key for the duration of the with-block.

        Args:
            key: Lock key (a document fingerprint)
            timeout: Seconds to wait for the lock (None = wait forever)

        Raises:
            FingerprintBusyError: If the lock was not acquired in time
        """
        entry = self._checkout(key)
        try:
            if timeout is None:
                acquired = entry.lock.acquire()
            else:
                acquired = entry.lock.acquire(timeout=timeout)
            if not acquired:
                logger.info("Lock for %s still held after %.1fs", key, timeout)
                raise FingerprintBusyError(key)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def is_held(self, key: str) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
