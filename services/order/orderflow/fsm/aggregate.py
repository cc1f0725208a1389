"""Order status derived from the current statuses of its line items."""

from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from orderflow.core.clock import utcnow
from orderflow.db.models import Order, OrderStatus


class Phase(str, Enum):
    AWAITING = "awaiting"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


PHASES = {
    "pending": Phase.AWAITING,
    "payment_confirmed": Phase.CONFIRMED,
    "preparing": Phase.IN_PROGRESS,
    "ready_to_ship": Phase.IN_PROGRESS,
    "shipped": Phase.IN_PROGRESS,
    "out_for_delivery": Phase.IN_PROGRESS,
    "booking_confirmed": Phase.IN_PROGRESS,
    "reminder_sent": Phase.IN_PROGRESS,
    "in_progress": Phase.IN_PROGRESS,
    "delivered": Phase.FULFILLED,
    "access_granted": Phase.FULFILLED,
    "downloaded": Phase.FULFILLED,
    "completed": Phase.FULFILLED,
    "no_show": Phase.FULFILLED,
    # the customer already received the item
    "refund_requested": Phase.FULFILLED,
    "cancelled": Phase.CANCELLED,
    "refunded": Phase.REFUNDED,
}


def classify(status: str) -> Phase:
    try:
        return PHASES[status]
    except KeyError:
        raise ValueError(f"unclassified line item status {status!r}") from None


def derive_order_status(item_statuses: Iterable[str]) -> OrderStatus:
    """Total function of the multiset of item statuses; order of items is irrelevant."""
    phases = [classify(s) for s in item_statuses]
    if not phases:
        return OrderStatus.PENDING
    active = [p for p in phases if p is not Phase.CANCELLED]
    if not active:
        return OrderStatus.CANCELLED
    if all(p is Phase.REFUNDED for p in active):
        return OrderStatus.REFUNDED
    if any(p is Phase.REFUNDED for p in active):
        return OrderStatus.PARTIALLY_REFUNDED
    if all(p is Phase.FULFILLED for p in active):
        return OrderStatus.COMPLETED
    if any(p in (Phase.IN_PROGRESS, Phase.FULFILLED) for p in active):
        return OrderStatus.PROCESSING
    if all(p is Phase.CONFIRMED for p in active):
        return OrderStatus.CONFIRMED
    return OrderStatus.PENDING


def recompute_order_status(order: Order, now: Optional[datetime] = None) -> tuple[str, str]:
    """Apply the derived status to ``order``; returns (previous, current)."""
    previous = order.status
    current = derive_order_status(it.status for it in order.items).value
    if current != previous:
        order.status = current
        now = now or utcnow()
        if current == OrderStatus.COMPLETED.value and order.completed_at is None:
            order.completed_at = now
        if current == OrderStatus.CANCELLED.value and order.cancelled_at is None:
            order.cancelled_at = now
    return previous, current
