from __future__ import annotations

from collections import OrderedDict
from typing import Hashable


class DedupCache:
    """Bounded memory of processed ``(sender, sequence)`` keys.

    Keys are evicted oldest-insertion-first once ``capacity`` is exceeded, so a
    duplicate older than the last ``capacity`` accepted keys may be processed
    again. Re-recording a key does not refresh its position.
    """

    def __init__(self, capacity: int = 4096) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._keys: OrderedDict[Hashable, None] = OrderedDict()

    def seen_before(self, key: Hashable) -> bool:
        return key in self._keys

    def record(self, key: Hashable) -> None:
        if key in self._keys:
            return
        self._keys[key] = None
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)

    def check_and_record(self, key: Hashable) -> bool:
        """Record ``key`` and return whether it had been seen already."""

        if key in self._keys:
            return True
        self.record(key)
        return False

    def clear(self) -> None:
        self._keys.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)
