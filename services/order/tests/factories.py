"""Builders shared by the test modules."""

from datetime import timedelta

from orderflow.core.clock import utcnow
from orderflow.db.models import CheckoutSession, CheckoutStatus, VariantStock
from orderflow.schemas import CartLine
from orderflow.services.orders import create_order_from_checkout, transition_line_item


def make_line(kind="physical", variant_id="var-1", qty=1, unit_price_cents=1000, merchant_id="m-1", **kw) -> CartLine:
    return CartLine(
        product_id=kw.pop("product_id", f"prod-{variant_id}"),
        variant_id=variant_id,
        qty=qty,
        unit_price_cents=unit_price_cents,
        merchant_id=merchant_id,
        kind=kind,
        title=kw.pop("title", f"Item {variant_id}"),
        **kw,
    )


def make_service_line(variant_id="svc-1", booking_date="2030-01-15T10:00:00", booking_slot="10:00", **kw) -> CartLine:
    metadata = {"booking_date": booking_date, "booking_slot": booking_slot, **kw.pop("metadata", {})}
    return make_line(kind="service", variant_id=variant_id, metadata=metadata, **kw)


def add_stock(db, variant_id, quantity, policy="deny", slot_capacity=None) -> VariantStock:
    row = VariantStock(variant_id=variant_id, quantity=quantity, inventory_policy=policy, slot_capacity=slot_capacity)
    db.add(row)
    db.commit()
    return row


def make_checkout_session(db, lines, tax_cents=0, shipping_cents=0, discount_cents=0,
                          expires_in=timedelta(minutes=30), status=CheckoutStatus.IN_PROGRESS.value,
                          user_id="user-1", **kw) -> CheckoutSession:
    subtotal = sum(line.line_total_cents for line in lines)
    cs = CheckoutSession(
        user_id=user_id,
        cart_snapshot=[line.model_dump(mode="json") for line in lines],
        totals={
            "subtotal_cents": subtotal,
            "tax_cents": tax_cents,
            "shipping_cents": shipping_cents,
            "discount_cents": discount_cents,
            "total_cents": subtotal + tax_cents + shipping_cents - discount_cents,
            "currency": "USD",
        },
        promo_codes=[],
        status=status,
        expires_at=utcnow() + expires_in,
        **kw,
    )
    db.add(cs)
    db.commit()
    return cs


def make_order(db, lines, outbox=None, **totals):
    cs = make_checkout_session(db, lines, **totals)
    return create_order_from_checkout(db, cs.id, "pi_test", outbox=outbox)


def advance(db, item_id, *statuses, metadata=None, outbox=None, now=None):
    item = None
    for status in statuses:
        item = transition_line_item(db, item_id, status, metadata=metadata, actor="merchant-1",
                                    outbox=outbox, now=now)
    return item
