"""Order event types and their payloads."""

from orderflow.db.models import Order, OrderLineItem

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
ORDER_PAYMENT_CONFIRMED = "order.payment_confirmed"
ORDER_CANCELLED = "order.cancelled"
LINE_ITEM_STATUS_CHANGED = "line_item.status_changed"

ALL_EVENT_TYPES = (
    ORDER_CREATED,
    ORDER_STATUS_CHANGED,
    ORDER_PAYMENT_CONFIRMED,
    ORDER_CANCELLED,
    LINE_ITEM_STATUS_CHANGED,
)


def _line(it: OrderLineItem) -> dict:
    return {
        "line_item_id": it.id,
        "kind": it.kind,
        "merchant_id": it.merchant_id,
        "product_id": it.product_id,
        "variant_id": it.variant_id,
        "title": it.title_snapshot,
        "qty": it.qty,
        "unit_price_cents": it.unit_price_cents,
        "line_total_cents": it.line_total_cents,
    }


def order_created(order: Order) -> dict:
    return {
        "type": ORDER_CREATED,
        "order_id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "guest_email": order.guest_email,
        "guest_phone": order.guest_phone,
        "currency": order.currency,
        "subtotal_cents": order.subtotal_cents,
        "tax_cents": order.tax_cents,
        "shipping_cents": order.shipping_cents,
        "discount_cents": order.discount_cents,
        "total_cents": order.total_cents,
        "merchant_ids": order.merchant_ids,
        "items": [_line(it) for it in order.items],
        "shipping_address": order.shipping_address,
        "checkout_session_id": order.checkout_session_id,
    }


def order_status_changed(order: Order, previous: str, current: str) -> dict:
    return {
        "type": ORDER_STATUS_CHANGED,
        "order_id": order.id,
        "order_number": order.order_number,
        "from_status": previous,
        "to_status": current,
    }


def order_payment_confirmed(order: Order) -> dict:
    return {
        "type": ORDER_PAYMENT_CONFIRMED,
        "order_id": order.id,
        "order_number": order.order_number,
        "payment_intent_id": order.payment_intent_id,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "merchant_ids": order.merchant_ids,
    }


def order_cancelled(order: Order, reason: str | None) -> dict:
    return {
        "type": ORDER_CANCELLED,
        "order_id": order.id,
        "order_number": order.order_number,
        "reason": reason,
        "items": [_line(it) for it in order.items],
    }


def line_item_status_changed(item: OrderLineItem, previous: str, metadata: dict | None = None) -> dict:
    return {
        "type": LINE_ITEM_STATUS_CHANGED,
        "order_id": item.order_id,
        "line_item_id": item.id,
        "kind": item.kind,
        "merchant_id": item.merchant_id,
        "from_status": previous,
        "to_status": item.status,
        "metadata": metadata or {},
    }
