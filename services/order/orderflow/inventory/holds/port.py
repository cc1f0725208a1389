"""Hold store port: TTL-bound counters and JSON documents.

The reservation manager programs against this interface; adapters are
selected through the HOLD_STORE_ADAPTER setting.
"""

from abc import ABC, abstractmethod
from typing import Optional


class HoldStore(ABC):
    @abstractmethod
    def incr(self, key: str, amount: int, ttl_seconds: int) -> int:
        """Add ``amount`` to the counter at ``key`` and reset its TTL; returns the new value."""
        ...

    @abstractmethod
    def decr(self, key: str, amount: int) -> int:
        """Subtract ``amount``; the key is removed once it drops to zero or below."""
        ...

    @abstractmethod
    def get_int(self, key: str) -> int:
        """Current counter value, 0 when missing or expired."""
        ...

    @abstractmethod
    def set_json(self, key: str, value: dict, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    def get_json(self, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    def pop_json(self, key: str) -> Optional[dict]:
        """Atomically read and delete a document."""
        ...

    @abstractmethod
    def expire(self, key: str, ttl_seconds: int) -> bool:
        """Refresh the TTL of a live key; False when the key is gone."""
        ...
