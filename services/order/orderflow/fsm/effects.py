"""Kind-specific side effects, one entry per legal (kind, from, to) edge.

An effect mutates the parsed fulfillment data of the item in place. Raising
from an effect aborts the transition before the status is written.
"""

import secrets
from datetime import datetime, timedelta
from typing import Any, Callable

from orderflow.core.config import settings
from orderflow.core.errors import ValidationFailed
from orderflow.db.models import ItemKind, OrderLineItem
from orderflow.fsm.transitions import edges

Effect = Callable[[OrderLineItem, Any, dict, datetime], None]


def _noop(item, data, metadata, now):
    pass


def _stamp(field: str) -> Effect:
    def effect(item, data, metadata, now):
        setattr(data, field, now)
    effect.__name__ = f"stamp_{field}"
    return effect


# physical

def _assign_warehouse(item, data, metadata, now):
    data.warehouse_id = metadata.get("warehouse_id") or data.warehouse_id or "default"


def _ship(item, data, metadata, now):
    data.tracking_number = metadata.get("tracking_number") or data.tracking_number
    data.carrier = metadata.get("carrier") or data.carrier
    if metadata.get("estimated_delivery"):
        data.estimated_delivery = datetime.fromisoformat(metadata["estimated_delivery"])
    data.shipped_at = now


# digital

def _grant_access(item, data, metadata, now):
    data.access_key = secrets.token_urlsafe(24)
    data.download_url = f"{settings.DOWNLOAD_BASE_URL}/{item.id}"
    data.granted_at = now
    data.expires_at = now + timedelta(days=settings.DIGITAL_ACCESS_DAYS)
    data.download_count = 0
    data.max_downloads = settings.DIGITAL_MAX_DOWNLOADS


def _first_download(item, data, metadata, now):
    data.download_count += 1
    if data.first_downloaded_at is None:
        data.first_downloaded_at = now


def _revoke_access(item, data, metadata, now):
    data.download_url = None
    data.access_key = None
    data.revoked_at = now


# service

def _confirm_booking(item, data, metadata, now):
    booking_date = data.booking_date or metadata.get("booking_date")
    if not booking_date:
        raise ValidationFailed("Booking date is required to confirm a booking", item_id=item.id)
    if isinstance(booking_date, str):
        booking_date = datetime.fromisoformat(booking_date)
    if booking_date.tzinfo is not None:
        booking_date = booking_date.replace(tzinfo=None) - booking_date.utcoffset()
    data.booking_date = booking_date
    data.booking_slot = metadata.get("booking_slot") or data.booking_slot
    data.specialist_id = metadata.get("specialist_id") or data.specialist_id
    data.booking_confirmed = True
    data.booking_confirmed_at = now


PHYSICAL, DIGITAL, SERVICE = ItemKind.PHYSICAL.value, ItemKind.DIGITAL.value, ItemKind.SERVICE.value

EFFECTS: dict[tuple[str, str, str], Effect] = {
    (PHYSICAL, "pending", "payment_confirmed"): _stamp("payment_confirmed_at"),
    (PHYSICAL, "pending", "cancelled"): _stamp("cancelled_at"),
    (PHYSICAL, "payment_confirmed", "preparing"): _assign_warehouse,
    (PHYSICAL, "payment_confirmed", "cancelled"): _stamp("cancelled_at"),
    (PHYSICAL, "preparing", "ready_to_ship"): _stamp("packed_at"),
    (PHYSICAL, "preparing", "cancelled"): _stamp("cancelled_at"),
    (PHYSICAL, "ready_to_ship", "shipped"): _ship,
    (PHYSICAL, "shipped", "out_for_delivery"): _stamp("out_for_delivery_at"),
    (PHYSICAL, "shipped", "delivered"): _stamp("delivered_at"),
    (PHYSICAL, "out_for_delivery", "delivered"): _stamp("delivered_at"),
    (PHYSICAL, "delivered", "refund_requested"): _stamp("refund_requested_at"),
    (PHYSICAL, "refund_requested", "refunded"): _stamp("refunded_at"),

    (DIGITAL, "pending", "payment_confirmed"): _noop,
    (DIGITAL, "pending", "cancelled"): _stamp("cancelled_at"),
    (DIGITAL, "payment_confirmed", "access_granted"): _grant_access,
    (DIGITAL, "payment_confirmed", "cancelled"): _stamp("cancelled_at"),
    (DIGITAL, "access_granted", "downloaded"): _first_download,
    (DIGITAL, "access_granted", "refund_requested"): _stamp("refund_requested_at"),
    (DIGITAL, "downloaded", "refund_requested"): _stamp("refund_requested_at"),
    (DIGITAL, "refund_requested", "refunded"): _revoke_access,

    (SERVICE, "pending", "payment_confirmed"): _noop,
    (SERVICE, "pending", "cancelled"): _stamp("cancelled_at"),
    (SERVICE, "payment_confirmed", "booking_confirmed"): _confirm_booking,
    (SERVICE, "payment_confirmed", "cancelled"): _stamp("cancelled_at"),
    (SERVICE, "booking_confirmed", "reminder_sent"): _stamp("reminder_sent_at"),
    (SERVICE, "booking_confirmed", "cancelled"): _stamp("cancelled_at"),
    (SERVICE, "reminder_sent", "in_progress"): _stamp("started_at"),
    (SERVICE, "reminder_sent", "no_show"): _stamp("no_show_at"),
    (SERVICE, "in_progress", "completed"): _stamp("completed_at"),
    (SERVICE, "completed", "refund_requested"): _stamp("refund_requested_at"),
    (SERVICE, "no_show", "refund_requested"): _stamp("refund_requested_at"),
    (SERVICE, "refund_requested", "refunded"): _stamp("refunded_at"),
}


def uncovered_edges() -> list[tuple[str, str, str]]:
    """Legal edges without an effect entry, plus entries for illegal edges."""
    legal = {(kind.value, src, dst) for kind in ItemKind for src, dst in edges(kind)}
    return sorted(legal.symmetric_difference(EFFECTS))


def apply_effect(item: OrderLineItem, from_status: str, to_status: str, data, metadata: dict, now: datetime) -> None:
    effect = EFFECTS[(ItemKind(item.kind).value, from_status, to_status)]
    effect(item, data, metadata, now)
