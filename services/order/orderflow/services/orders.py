"""Order operations.

Each public function is one transaction on the session it is given: the
business mutation, its audit rows and its outbox events commit together or
not at all.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from orderflow.core.clock import utcnow
from orderflow.core.errors import AlreadyExists, Conflict, Expired, NotFound, ValidationFailed
from orderflow.db.models import (
    AggregateKind,
    CheckoutSession,
    CheckoutStatus,
    ItemKind,
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentStatus,
)
from orderflow.db.session import unit_of_work
from orderflow.fsm import machine
from orderflow.fsm.aggregate import recompute_order_status
from orderflow.fsm.refunds import RefundDecision, refund_eligibility, service_cancellation
from orderflow.fsm.transitions import KNOWN_STATUSES, allowed_transitions
from orderflow.outbox import events
from orderflow.outbox.store import Outbox, get_outbox
from orderflow.schemas import CartLine, dump_fulfillment, initial_fulfillment, parse_fulfillment
from orderflow.services.order_numbers import allocate_order_number

logger = structlog.get_logger(__name__)


def _lock_order(db: Session, order_id: int) -> Order:
    order = db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    return order


def _item_or_404(db: Session, item_id: int, order_id: Optional[int] = None) -> OrderLineItem:
    item = db.get(OrderLineItem, item_id)
    if item is None or (order_id is not None and item.order_id != order_id):
        raise NotFound(f"Line item {item_id} not found", item_id=item_id)
    return item


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    return order


def get_order_by_number(db: Session, order_number: str) -> Order:
    order = db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()
    if order is None:
        raise NotFound(f"Order {order_number} not found", order_number=order_number)
    return order


def _page(db: Session, stmt, page: int, limit: int) -> tuple[list, int]:
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    rows = db.execute(
        stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return rows, total


def list_user_orders(db: Session, user_id: str, page: int = 1, limit: int = 10,
                     status: Optional[str] = None) -> dict:
    """A customer's orders, newest first."""
    if page < 1 or limit < 1:
        raise ValidationFailed("page and limit must be positive", page=page, limit=limit)
    stmt = select(Order).where(Order.user_id == user_id)
    if status:
        stmt = stmt.where(Order.status == status)
    rows, total = _page(db, stmt, page, limit)
    return {"orders": rows, "page": page, "limit": limit, "total": total,
            "total_pages": -(-total // limit)}


def list_merchant_orders(db: Session, merchant_id: str, page: int = 1, limit: int = 10) -> dict:
    """Orders holding at least one of the merchant's items, each paired with
    only those items."""
    if page < 1 or limit < 1:
        raise ValidationFailed("page and limit must be positive", page=page, limit=limit)
    mine = select(OrderLineItem.order_id).where(OrderLineItem.merchant_id == merchant_id)
    rows, total = _page(db, select(Order).where(Order.id.in_(mine)), page, limit)
    return {
        "orders": [(o, [it for it in o.items if it.merchant_id == merchant_id]) for o in rows],
        "page": page, "limit": limit, "total": total, "total_pages": -(-total // limit),
    }


def merchant_order_items(db: Session, order_id: int, merchant_id: str) -> list[OrderLineItem]:
    items = db.execute(
        select(OrderLineItem)
        .where(OrderLineItem.order_id == order_id, OrderLineItem.merchant_id == merchant_id)
        .order_by(OrderLineItem.id)
    ).scalars().all()
    if not items:
        raise NotFound(f"Order {order_id} has no items for this merchant", order_id=order_id)
    return items


def track_order(db: Session, order_number: str, email: Optional[str] = None) -> dict:
    """Public progress view of an order.

    Guest orders are only shown to a caller who knows the checkout email; a
    mismatch looks the same as an unknown order number.
    """
    order = get_order_by_number(db, order_number)
    if order.user_id is None and (not email or (order.guest_email or "").lower() != email.strip().lower()):
        raise NotFound(f"Order {order_number} not found", order_number=order_number)
    items = []
    for it in order.items:
        tracking = None
        if it.kind == ItemKind.PHYSICAL.value:
            data = it.fulfillment_data or {}
            tracking = {k: data.get(k) for k in ("tracking_number", "carrier", "estimated_delivery")}
        items.append({"title": it.title_snapshot, "qty": it.qty, "status": it.status, "tracking": tracking})
    return {"order_number": order.order_number, "status": order.status,
            "created_at": order.created_at, "items": items}


def create_order_from_checkout(
    db: Session,
    session_id: str,
    payment_intent_id: Optional[str] = None,
    outbox: Optional[Outbox] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Turn an in-progress checkout session into an order with pending items."""
    outbox = outbox or get_outbox()
    now = now or utcnow()
    with unit_of_work(db):
        cs = db.execute(
            select(CheckoutSession)
            .where(CheckoutSession.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if cs is None:
            raise NotFound(f"Checkout session {session_id} not found", session_id=session_id)
        if cs.order_id is not None:
            raise AlreadyExists(f"Order already created for session {session_id}",
                                session_id=session_id, order_id=cs.order_id)
        if cs.status != CheckoutStatus.IN_PROGRESS.value:
            raise Conflict(f"Checkout session is {cs.status}", session_id=session_id, status=cs.status)
        if cs.is_expired(now):
            raise Expired("Checkout session has expired", session_id=session_id)

        lines = [CartLine.model_validate(raw) for raw in cs.cart_snapshot]
        totals = cs.totals or {}
        subtotal = sum(line.line_total_cents for line in lines)
        tax = int(totals.get("tax_cents", 0))
        shipping = int(totals.get("shipping_cents", 0))
        discount = int(totals.get("discount_cents", 0))

        order = Order(
            order_number=allocate_order_number(db, now),
            user_id=cs.user_id,
            guest_email=cs.guest_email,
            guest_phone=cs.guest_phone,
            status=OrderStatus.PENDING.value,
            currency=totals.get("currency") or (lines[0].currency if lines else "USD"),
            subtotal_cents=subtotal,
            tax_cents=tax,
            shipping_cents=shipping,
            discount_cents=discount,
            total_cents=max(0, subtotal + tax + shipping - discount),
            payment_status=PaymentStatus.PENDING.value,
            payment_intent_id=payment_intent_id,
            payment_method=cs.payment_method,
            shipping_address=cs.shipping_address,
            billing_address=cs.billing_address,
            checkout_session_id=cs.id,
            meta={"promo_codes": cs.promo_codes or []},
            created_at=now,
        )
        db.add(order)
        for line in lines:
            order.items.append(OrderLineItem(
                merchant_id=line.merchant_id,
                product_id=line.product_id,
                variant_id=line.variant_id,
                kind=line.kind.value,
                title_snapshot=line.title,
                sku_snapshot=line.sku,
                qty=line.qty,
                unit_price_cents=line.unit_price_cents,
                line_total_cents=line.line_total_cents,
                currency=line.currency,
                fulfillment_data=initial_fulfillment(line),
                created_at=now,
            ))
        db.flush()
        for item in order.items:
            machine.start_history(db, item, actor="checkout", now=now)

        cs.status = CheckoutStatus.COMPLETED.value
        cs.order_id = order.id
        cs.order_number = order.order_number
        cs.completed_at = now

        outbox.enqueue(
            db, AggregateKind.ORDER.value, order.id, events.ORDER_CREATED,
            events.order_created(order),
            idempotency_key=f"{events.ORDER_CREATED}:{cs.id}",
            now=now,
        )
    logger.info("order.created", order_id=order.id, order_number=order.order_number,
                session_id=session_id, items=len(order.items), total_cents=order.total_cents)
    return order


def _locked_items(db: Session, order: Order) -> list[OrderLineItem]:
    return [machine.lock_item(db, item_id) for item_id in sorted(it.id for it in order.items)]


def _transition(db: Session, outbox: Outbox, item: OrderLineItem, to_status: str,
                metadata: Optional[dict], actor: Optional[str], now: datetime) -> OrderLineItem:
    item = machine.lock_item(db, item.id)
    if to_status == "cancelled" and item.kind == ItemKind.SERVICE.value:
        decision = service_cancellation(parse_fulfillment(item.kind, item.fulfillment_data).booking_date, now)
        if not decision.allowed:
            raise Conflict(decision.reason, item_id=item.id)
    previous = item.status
    machine.transition(db, item.id, to_status, metadata=metadata, actor=actor, now=now)
    outbox.enqueue(db, AggregateKind.ORDER_LINE_ITEM.value, item.id, events.LINE_ITEM_STATUS_CHANGED,
                   events.line_item_status_changed(item, previous, metadata), now=now)
    return item


def _refresh_aggregate(db: Session, outbox: Outbox, order: Order, now: datetime) -> None:
    _locked_items(db, order)
    before, after = recompute_order_status(order, now)
    if before != after:
        outbox.enqueue(db, AggregateKind.ORDER.value, order.id, events.ORDER_STATUS_CHANGED,
                       events.order_status_changed(order, before, after), now=now)
        logger.info("order.status_changed", order_id=order.id, from_status=before, to_status=after)


def transition_line_item(
    db: Session,
    item_id: int,
    to_status: str,
    metadata: Optional[dict] = None,
    actor: Optional[str] = None,
    order_id: Optional[int] = None,
    outbox: Optional[Outbox] = None,
    now: Optional[datetime] = None,
) -> OrderLineItem:
    if to_status not in KNOWN_STATUSES:
        raise ValidationFailed(f"Unknown status {to_status!r}", to_status=to_status)
    outbox = outbox or get_outbox()
    now = now or utcnow()
    with unit_of_work(db):
        item = _item_or_404(db, item_id, order_id)
        # order row first, then the item: one lock order for every writer
        order = _lock_order(db, item.order_id)
        _transition(db, outbox, item, to_status, metadata, actor, now)
        _refresh_aggregate(db, outbox, order, now)
    return item


def confirm_payment(
    db: Session,
    order_id: int,
    payment_intent_id: Optional[str] = None,
    actor: str = "payment",
    outbox: Optional[Outbox] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Capture payment and move every pending item to payment_confirmed.

    Repeated confirmations of a captured order are no-ops.
    """
    outbox = outbox or get_outbox()
    now = now or utcnow()
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if order.payment_status == PaymentStatus.CAPTURED.value:
            return order
        if order.status == OrderStatus.CANCELLED.value:
            raise Conflict(f"Order {order_id} is cancelled", order_id=order_id)
        order.payment_status = PaymentStatus.CAPTURED.value
        if payment_intent_id:
            order.payment_intent_id = payment_intent_id
        for item in _locked_items(db, order):
            if item.status == "pending":
                _transition(db, outbox, item, "payment_confirmed",
                            {"payment_intent_id": order.payment_intent_id}, actor, now)
        _refresh_aggregate(db, outbox, order, now)
        outbox.enqueue(db, AggregateKind.ORDER.value, order.id, events.ORDER_PAYMENT_CONFIRMED,
                       events.order_payment_confirmed(order),
                       idempotency_key=f"{events.ORDER_PAYMENT_CONFIRMED}:{order.id}", now=now)
    logger.info("order.payment_confirmed", order_id=order.id, payment_intent_id=order.payment_intent_id)
    return order


def cancel_order(
    db: Session,
    order_id: int,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    outbox: Optional[Outbox] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Cancel every item of the order, or none of them."""
    outbox = outbox or get_outbox()
    now = now or utcnow()
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if order.status == OrderStatus.CANCELLED.value:
            raise Conflict(f"Order {order_id} is already cancelled", order_id=order_id)
        open_items = [it for it in _locked_items(db, order) if it.status != "cancelled"]
        blocking = [
            {"item_id": it.id, "status": it.status}
            for it in open_items
            if "cancelled" not in allowed_transitions(it.kind, it.status)
        ]
        if blocking:
            raise Conflict(f"Order {order_id} has items that can no longer be cancelled",
                           order_id=order_id, items=blocking)
        for item in open_items:
            _transition(db, outbox, item, "cancelled", {"reason": reason}, actor, now)
        order.status = OrderStatus.CANCELLED.value
        order.cancelled_at = now
        outbox.enqueue(db, AggregateKind.ORDER.value, order.id, events.ORDER_CANCELLED,
                       events.order_cancelled(order, reason),
                       idempotency_key=f"{events.ORDER_CANCELLED}:{order.id}", now=now)
    logger.info("order.cancelled", order_id=order.id, reason=reason, actor=actor)
    return order


def check_refund(db: Session, item_id: int, order_id: Optional[int] = None,
                 now: Optional[datetime] = None) -> RefundDecision:
    item = _item_or_404(db, item_id, order_id)
    return refund_eligibility(item.kind, item.fulfillment_data, now)


def request_refund(
    db: Session,
    item_id: int,
    reason: Optional[str] = None,
    actor: Optional[str] = None,
    order_id: Optional[int] = None,
    outbox: Optional[Outbox] = None,
    now: Optional[datetime] = None,
) -> OrderLineItem:
    outbox = outbox or get_outbox()
    now = now or utcnow()
    with unit_of_work(db):
        item = _item_or_404(db, item_id, order_id)
        order = _lock_order(db, item.order_id)
        item = machine.lock_item(db, item_id)
        decision = refund_eligibility(item.kind, item.fulfillment_data, now)
        if not decision.allowed:
            raise Conflict(decision.reason, item_id=item.id)
        _transition(db, outbox, item, "refund_requested", {"reason": reason}, actor, now)
        _refresh_aggregate(db, outbox, order, now)
    return item


def record_download(
    db: Session,
    item_id: int,
    access_key: str,
    outbox: Optional[Outbox] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Count one download of a digital item and return its download link.

    The access key handed out with the grant is required on every call; a
    missing or wrong key is answered as if the item did not exist.
    """
    outbox = outbox or get_outbox()
    now = now or utcnow()
    with unit_of_work(db):
        item = _item_or_404(db, item_id)
        if item.kind != ItemKind.DIGITAL.value:
            raise Conflict(f"Line item {item_id} is not a digital item", item_id=item_id)
        order = _lock_order(db, item.order_id)
        item = machine.lock_item(db, item_id)
        if item.status not in ("access_granted", "downloaded"):
            raise Conflict(f"Downloads are not available while the item is {item.status}", item_id=item_id)
        data = parse_fulfillment(item.kind, item.fulfillment_data)
        if data.revoked_at is not None or data.access_key is None:
            raise Expired("Download access has been revoked", item_id=item_id)
        if not access_key or access_key != data.access_key:
            raise NotFound("Unknown access key", item_id=item_id)
        if data.expires_at is not None and now > data.expires_at:
            raise Expired("Download link has expired", item_id=item_id)
        if data.max_downloads and data.download_count >= data.max_downloads:
            raise Conflict("Download limit reached", item_id=item_id, max_downloads=data.max_downloads)

        if item.status == "access_granted":
            _transition(db, outbox, item, "downloaded", None, "customer", now)
            _refresh_aggregate(db, outbox, order, now)
            data = parse_fulfillment(item.kind, item.fulfillment_data)
        else:
            data.download_count += 1
            item.fulfillment_data = dump_fulfillment(data)
    logger.info("line_item.downloaded", item_id=item_id, count=data.download_count)
    return {
        "download_url": data.download_url,
        "download_count": data.download_count,
        "remaining": max(0, data.max_downloads - data.download_count),
        "expires_at": data.expires_at.isoformat() if data.expires_at else None,
    }


def transition_history(db: Session, item_id: int):
    return machine.transition_history(db, item_id)
