"""Explicit single-value cache with a time-to-live."""

import threading
import time
from typing import Any, Callable, Optional


class CachedValue:
    """
    Holds one value with the time it was fetched.

    Owned by the component that needs it; callers invalidate explicitly
    after writes that change the underlying value.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.value: Any = None
        self.fetched_at: Optional[float] = None
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def is_fresh(self) -> bool:
        return self.fetched_at is not None and self._clock() - self.fetched_at < self.ttl

    def get(self, loader: Callable[[], Any]) -> Any:
        """Return the cached value, calling loader when missing or stale."""
        with self._lock:
            if not self.is_fresh:
                self.value = loader()
                self.fetched_at = self._clock()
            return self.value

    def invalidate(self):
        with self._lock:
            self.value = None
            self.fetched_at = None
