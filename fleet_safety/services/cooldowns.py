"""
Cooldown tracking for alert and violation deduplication.
"""
import time
from typing import Callable, Hashable


class CooldownTracker:
    """
    Remembers when each key last fired.

    Entries are never deleted explicitly; a key becomes ready again once
    `window` seconds have elapsed since it was marked.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._last_fired: dict[Hashable, float] = {}

    def ready(self, key: Hashable) -> bool:
        last = self._last_fired.get(key)
        return last is None or (self._clock() - last) >= self.window

    def mark(self, key: Hashable):
        self._last_fired[key] = self._clock()

    def try_acquire(self, key: Hashable) -> bool:
        """Mark the key and return True if it was ready, otherwise False."""
        if not self.ready(key):
            return False
        self.mark(key)
        return True

    def active_count(self) -> int:
        now = self._clock()
        return sum(1 for last in self._last_fired.values() if now - last < self.window)
