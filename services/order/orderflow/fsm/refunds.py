"""Refund and cancellation eligibility.

Pure and advisory: nothing here reads the database or mutates the item.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from orderflow.core.clock import utcnow
from orderflow.db.models import ItemKind
from orderflow.schemas import parse_fulfillment

PHYSICAL_REFUND_WINDOW = timedelta(days=14)
DIGITAL_REFUND_WINDOW = timedelta(days=7)
SERVICE_CANCEL_CUTOFF = timedelta(hours=24)


@dataclass(frozen=True)
class RefundDecision:
    allowed: bool
    reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {"eligible": self.allowed, "reason": self.reason}


ALLOWED = RefundDecision(True)


def service_cancellation(booking_date: Optional[datetime], now: datetime) -> RefundDecision:
    if booking_date is not None and booking_date > now and booking_date - now < SERVICE_CANCEL_CUTOFF:
        return RefundDecision(False, "Cannot cancel within 24h of appointment")
    return ALLOWED


def refund_eligibility(kind: str, fulfillment_data: dict, now: Optional[datetime] = None) -> RefundDecision:
    now = now or utcnow()
    data = parse_fulfillment(kind, fulfillment_data)

    if kind == ItemKind.PHYSICAL.value:
        if data.delivered_at is None:
            return RefundDecision(False, "Item has not been delivered")
        if now - data.delivered_at > PHYSICAL_REFUND_WINDOW:
            return RefundDecision(False, "Refund period expired (14 days)")
        return ALLOWED

    if kind == ItemKind.DIGITAL.value:
        if data.download_count == 0:
            return ALLOWED
        if data.granted_at is not None and now - data.granted_at <= DIGITAL_REFUND_WINDOW:
            return ALLOWED
        return RefundDecision(False, "Refund period expired (7 days)")

    return service_cancellation(data.booking_date, now)
