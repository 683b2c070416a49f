"""
Implements a bounded cache of fetch results.
"""

from __future__ import annotations

import time
from typing import Callable, Generic, TypeVar

__all__ = ["ReadCache"]

T = TypeVar("T")


class ReadCache(Generic[T]):
    """
    Memo of query results bounded by capacity and age. When over capacity,
    the oldest inserted entry is evicted.
    """

    capacity: int
    """Max number of entries; 0 disables caching"""

    max_age: float
    """Max age of an entry in seconds"""

    _entries: dict[str, tuple[T, float]]
    """Mapping of key to (value, timestamp), in insertion order"""

    _clock: Callable[[], float]

    def __init__(
        self,
        capacity: int,
        max_age: float,
        *,
        clock: Callable[[], float] | None = None,
    ):
        self.capacity = capacity
        self.max_age = max_age
        self._entries = dict()
        self._clock = clock or time.monotonic

    def __str__(self):
        return f"ReadCache: capacity={self.capacity}, max_age={self.max_age}, keys={list(self._entries)}"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> T | None:
        """
        Get cached value, or `None` if absent or expired. Expired entries are
        evicted.
        """
        if self.capacity == 0:
            return None

        entry = self._entries.get(key)
        if entry is None:
            return None

        value, stored_at = entry
        if self._clock() - stored_at > self.max_age:
            del self._entries[key]
            return None

        return value

    def put(self, key: str, value: T):
        """
        Store value with the current timestamp.
        """
        if self.capacity == 0:
            return

        # re-insert so a refreshed key counts as newest
        self._entries.pop(key, None)
        self._entries[key] = (value, self._clock())

        while len(self._entries) > self.capacity:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

    def invalidate(self, key: str | None = None):
        """
        Drop one key, or everything if no key provided.
        """
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def reset(self, capacity: int, max_age: float):
        self.invalidate()
        self.capacity = capacity
        self.max_age = max_age
