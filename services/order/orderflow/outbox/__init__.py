from orderflow.outbox.handlers import HandlerRegistry, default_registry
from orderflow.outbox.store import Outbox, backoff_ms, get_outbox

__all__ = ["HandlerRegistry", "Outbox", "backoff_ms", "default_registry", "get_outbox"]
