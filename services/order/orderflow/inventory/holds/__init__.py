"""Soft-hold store abstraction, selected by configuration."""

from orderflow.core.config import settings

_store_instance = None


def get_hold_store():
    """Return the configured hold store (singleton).

    ``redis`` in production; ``memory`` keeps holds in-process.
    """
    global _store_instance
    if _store_instance is None:
        adapter = settings.HOLD_STORE_ADAPTER
        if adapter == "redis":
            from orderflow.inventory.holds.redis_adapter import RedisHoldStore

            _store_instance = RedisHoldStore()
        elif adapter == "memory":
            from orderflow.inventory.holds.memory_adapter import InMemoryHoldStore

            _store_instance = InMemoryHoldStore()
        else:
            raise ValueError(f"Unknown hold store adapter: {adapter}")
    return _store_instance


def reset_hold_store():
    global _store_instance
    _store_instance = None
