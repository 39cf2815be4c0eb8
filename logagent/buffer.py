"""Bounded hand-off queue between the tailer and the dispatcher."""

import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)


class HandoffQueue:
    """Fixed-capacity FIFO with blocking put/get and an idempotent close.

    A full queue blocks producers instead of dropping entries. ``close()``
    wakes every blocked producer and consumer at once: pending ``put``
    calls return False and ``get`` returns None from then on. Entries still
    queued at close time are discarded.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._items: deque = deque()
        self._lock = threading.Lock()
        self._not_full = threading.Condition(self._lock)
        self._not_empty = threading.Condition(self._lock)
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def qsize(self) -> int:
        with self._lock:
            return len(self._items)

    def put(self, item, timeout: float | None = None) -> bool:
        """Append *item*, blocking while the queue is full.

        Returns True once queued, False if the queue was closed or the
        timeout expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._not_full:
            while not self._closed and len(self._items) >= self._capacity:
                if deadline is None:
                    self._not_full.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._not_full.wait(remaining)
            if self._closed:
                return False
            self._items.append(item)
            self._not_empty.notify()
            return True

    def get(self, timeout: float | None = None):
        """Remove and return the oldest item, blocking while empty.

        Returns None once the queue is closed or the timeout expires.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._not_empty:
            while not self._closed and not self._items:
                if deadline is None:
                    self._not_empty.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._not_empty.wait(remaining)
            if self._closed:
                return None
            item = self._items.popleft()
            self._not_full.notify()
            return item

    def close(self) -> int:
        """Close the queue and wake all waiters. Returns entries discarded."""
        with self._lock:
            if self._closed:
                return 0
            self._closed = True
            discarded = len(self._items)
            self._items.clear()
            self._not_full.notify_all()
            self._not_empty.notify_all()
        if discarded:
            logger.info("Hand-off queue closed, discarded %d queued entries", discarded)
        return discarded
