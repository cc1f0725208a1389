"""Error taxonomy shared by every order-service operation.

Business-rule violations are raised synchronously from inside the
orchestrating transaction and mapped to HTTP responses by the API layer.
Side-effect failures never surface here: they stay inside the outbox.
"""

from typing import Any


class OrderflowError(Exception):
    code = "error"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.details}


class ValidationFailed(OrderflowError):
    """Malformed input, rejected before any lock is taken."""

    code = "validation"
    http_status = 422


class NotFound(OrderflowError):
    code = "not_found"
    http_status = 404


class Conflict(OrderflowError):
    """Illegal FSM transition, unexpected session status, replayed DLQ entry."""

    code = "conflict"
    http_status = 409


class AlreadyExists(Conflict):
    code = "already_exists"


class Expired(OrderflowError):
    code = "expired"
    http_status = 410


class InsufficientResource(OrderflowError):
    code = "insufficient_resource"
    http_status = 409


class TransientInfrastructure(OrderflowError):
    """Lock timeouts and connectivity failures."""

    code = "transient_infrastructure"
    http_status = 503


class InvalidTransition(Conflict):
    def __init__(self, kind: str, from_status: str, to_status: str, allowed: list[str]):
        super().__init__(
            f"Invalid transition from {from_status} to {to_status} for {kind} item. "
            f"Allowed transitions: {', '.join(allowed) or 'none'}",
            from_status=from_status,
            to_status=to_status,
            allowed=allowed,
        )
        self.allowed = allowed
