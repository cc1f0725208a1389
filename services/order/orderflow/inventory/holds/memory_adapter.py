"""In-process hold store for tests and local development."""

import copy
import threading
import time
from typing import Callable, Optional

from orderflow.inventory.holds.port import HoldStore


class InMemoryHoldStore(HoldStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._data: dict[str, tuple[object, float]] = {}
        self._lock = threading.RLock()

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if self.clock() >= deadline:
            del self._data[key]
            return None
        return value

    def incr(self, key, amount, ttl_seconds):
        with self._lock:
            value = int(self._live(key) or 0) + amount
            self._data[key] = (value, self.clock() + ttl_seconds)
            return value

    def decr(self, key, amount):
        with self._lock:
            current = self._live(key)
            if current is None:
                return -amount
            value = int(current) - amount
            if value <= 0:
                del self._data[key]
            else:
                self._data[key] = (value, self._data[key][1])
            return value

    def get_int(self, key):
        with self._lock:
            return max(0, int(self._live(key) or 0))

    def set_json(self, key, value, ttl_seconds):
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self.clock() + ttl_seconds)

    def get_json(self, key) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self._live(key))

    def pop_json(self, key) -> Optional[dict]:
        with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    def expire(self, key, ttl_seconds):
        with self._lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self.clock() + ttl_seconds)
            return True

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(k for k in list(self._data) if self._live(k) is not None)
