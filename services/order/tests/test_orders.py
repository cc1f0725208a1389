"""Tests for order creation and order-level operations."""

import re
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from factories import advance, make_checkout_session, make_line, make_order, make_service_line
from orderflow.core.clock import utcnow
from orderflow.core.errors import AlreadyExists, Conflict, Expired, InvalidTransition, NotFound, ValidationFailed
from orderflow.db.models import CheckoutSession, Order, OrderLineItem, OrderStatusTransition, OutboxEvent
from orderflow.db.session import SessionLocal
from orderflow.services import orders


def _events(db, event_type=None):
    stmt = select(OutboxEvent).order_by(OutboxEvent.id)
    if event_type:
        stmt = stmt.where(OutboxEvent.event_type == event_type)
    return db.execute(stmt).scalars().all()


def _mixed_lines():
    return [
        make_line("physical", variant_id="tee-m", qty=2, unit_price_cents=1000, merchant_id="m-1"),
        make_line("digital", variant_id="ebook", qty=1, unit_price_cents=500, merchant_id="m-2"),
    ]


class TestCreateOrderFromCheckout:
    def test_two_physical_and_one_digital(self, db):
        cs = make_checkout_session(db, _mixed_lines(), tax_cents=150, shipping_cents=500)

        order = orders.create_order_from_checkout(db, cs.id, "pi_123")

        assert order.subtotal_cents == 2500
        assert order.total_cents == 3150
        assert [it.status for it in order.items] == ["pending", "pending"]
        assert [it.kind for it in order.items] == ["physical", "digital"]
        assert order.items[0].line_total_cents == 2000
        assert order.items[1].fulfillment_data["kind"] == "digital"
        assert order.status == "pending"
        assert order.payment_intent_id == "pi_123"
        assert order.merchant_ids == ["m-1", "m-2"]

    def test_session_is_completed_and_linked(self, db):
        cs = make_checkout_session(db, _mixed_lines())
        order = orders.create_order_from_checkout(db, cs.id)
        db.expire_all()
        cs = db.get(CheckoutSession, cs.id)
        assert cs.status == "completed"
        assert cs.order_id == order.id
        assert cs.order_number == order.order_number
        assert cs.completed_at is not None

    def test_order_number_format(self, db):
        order = make_order(db, _mixed_lines())
        assert re.fullmatch(r"ORD-\d{8}-\d{6}", order.order_number)
        other = make_order(db, _mixed_lines())
        assert other.order_number != order.order_number

    def test_one_created_event_with_full_payload(self, db):
        cs = make_checkout_session(db, _mixed_lines(), tax_cents=150, shipping_cents=500)
        order = orders.create_order_from_checkout(db, cs.id)

        (ev,) = _events(db, "order.created")
        assert ev.idempotency_key == f"order.created:{cs.id}"
        assert ev.aggregate_id == str(order.id)
        assert ev.payload["total_cents"] == 3150
        assert ev.payload["merchant_ids"] == ["m-1", "m-2"]
        assert [i["kind"] for i in ev.payload["items"]] == ["physical", "digital"]

    def test_initial_audit_rows(self, db):
        order = make_order(db, _mixed_lines())
        rows = db.execute(select(OrderStatusTransition).where(OrderStatusTransition.order_id == order.id)).scalars().all()
        assert len(rows) == 2
        assert {(r.from_status, r.to_status) for r in rows} == {(None, "pending")}
        assert all(len(it.status_history) == 1 for it in order.items)

    def test_line_items_are_stored_with_the_order(self, db):
        order = make_order(db, _mixed_lines())
        other = SessionLocal()
        try:
            stored = other.execute(
                select(OrderLineItem).where(OrderLineItem.order_id == order.id).order_by(OrderLineItem.id)
            ).scalars().all()
        finally:
            other.close()
        assert [(it.variant_id, it.qty, it.merchant_id) for it in stored] == [("tee-m", 2, "m-1"), ("ebook", 1, "m-2")]

    def test_second_call_reports_existing_order(self, db):
        cs = make_checkout_session(db, _mixed_lines())
        order = orders.create_order_from_checkout(db, cs.id)

        with pytest.raises(AlreadyExists) as exc:
            orders.create_order_from_checkout(db, cs.id)

        assert exc.value.details["order_id"] == order.id
        assert db.execute(select(func.count()).select_from(Order)).scalar() == 1
        assert len(_events(db, "order.created")) == 1

    def test_missing_session(self, db):
        with pytest.raises(NotFound):
            orders.create_order_from_checkout(db, "no-such-session")

    def test_cancelled_session(self, db):
        cs = make_checkout_session(db, _mixed_lines(), status="cancelled")
        with pytest.raises(Conflict):
            orders.create_order_from_checkout(db, cs.id)

    def test_expired_session_rolls_back(self, db):
        cs = make_checkout_session(db, _mixed_lines(), expires_in=timedelta(minutes=-1))
        with pytest.raises(Expired):
            orders.create_order_from_checkout(db, cs.id)
        assert db.execute(select(func.count()).select_from(Order)).scalar() == 0
        assert _events(db) == []

    def test_discount_never_drives_total_negative(self, db):
        cs = make_checkout_session(db, [make_line(unit_price_cents=300)], discount_cents=1000)
        order = orders.create_order_from_checkout(db, cs.id)
        assert order.total_cents == 0


class TestLineItemOperations:
    def test_transition_updates_aggregate_and_stages_events(self, db):
        order = make_order(db, _mixed_lines())
        orders.confirm_payment(db, order.id, "pi_1")
        physical, digital = order.items

        advance(db, physical.id, "preparing")
        db.expire_all()
        assert db.get(Order, order.id).status == "processing"

        changed = _events(db, "order.status_changed")
        assert [(e.payload["from_status"], e.payload["to_status"]) for e in changed] == [
            ("pending", "confirmed"),
            ("confirmed", "processing"),
        ]
        assert len(_events(db, "line_item.status_changed")) == 3

    def test_order_completes_when_everything_is_fulfilled(self, db):
        order = make_order(db, _mixed_lines())
        orders.confirm_payment(db, order.id)
        physical, digital = order.items
        advance(db, physical.id, "preparing", "ready_to_ship", "shipped", "delivered")
        advance(db, digital.id, "access_granted")
        db.expire_all()
        order = db.get(Order, order.id)
        assert order.status == "completed"
        assert order.completed_at is not None

    def test_illegal_transition_changes_nothing(self, db):
        order = make_order(db, _mixed_lines())
        before = len(_events(db))
        with pytest.raises(InvalidTransition):
            orders.transition_line_item(db, order.items[0].id, "shipped")
        assert len(_events(db)) == before

    def test_unknown_status(self, db):
        order = make_order(db, _mixed_lines())
        with pytest.raises(ValidationFailed):
            orders.transition_line_item(db, order.items[0].id, "lost")

    def test_item_must_belong_to_order(self, db):
        order = make_order(db, _mixed_lines())
        with pytest.raises(NotFound):
            orders.transition_line_item(db, order.items[0].id, "payment_confirmed", order_id=order.id + 100)

    def test_stale_copy_cannot_repeat_a_transition(self, db):
        order = make_order(db, [make_line()])
        item = db.get(OrderLineItem, order.items[0].id)
        assert item.status == "pending"

        other = SessionLocal()
        try:
            orders.transition_line_item(other, item.id, "payment_confirmed")
        finally:
            other.close()

        with pytest.raises(InvalidTransition):
            orders.transition_line_item(db, item.id, "payment_confirmed")

        rows = db.execute(
            select(OrderStatusTransition).where(OrderStatusTransition.line_item_id == item.id)
        ).scalars().all()
        assert [(r.from_status, r.to_status) for r in rows] == [(None, "pending"), ("pending", "payment_confirmed")]
        assert len(_events(db, "line_item.status_changed")) == 1


class TestConfirmPayment:
    def test_confirms_every_pending_item_once(self, db):
        order = make_order(db, _mixed_lines())
        orders.confirm_payment(db, order.id, "pi_9")
        orders.confirm_payment(db, order.id, "pi_9")
        db.expire_all()
        order = db.get(Order, order.id)
        assert order.payment_status == "captured"
        assert order.status == "confirmed"
        assert {it.status for it in order.items} == {"payment_confirmed"}
        assert len(_events(db, "order.payment_confirmed")) == 1


class TestCancelOrder:
    def test_cancels_every_item(self, db):
        order = make_order(db, _mixed_lines())
        orders.cancel_order(db, order.id, reason="changed my mind", actor="user-1")
        db.expire_all()
        order = db.get(Order, order.id)
        assert order.status == "cancelled"
        assert order.cancelled_at is not None
        assert {it.status for it in order.items} == {"cancelled"}
        assert len(_events(db, "order.cancelled")) == 1

    def test_shipped_item_blocks_the_whole_cancellation(self, db):
        order = make_order(db, _mixed_lines())
        orders.confirm_payment(db, order.id)
        physical, digital = order.items
        advance(db, physical.id, "preparing", "ready_to_ship", "shipped")

        with pytest.raises(Conflict) as exc:
            orders.cancel_order(db, order.id)

        assert exc.value.details["items"] == [{"item_id": physical.id, "status": "shipped"}]
        db.expire_all()
        assert db.get(Order, order.id).items[1].status == "payment_confirmed"

    def test_shipment_made_elsewhere_blocks_cancellation(self, db):
        order = make_order(db, _mixed_lines())
        orders.confirm_payment(db, order.id)
        physical, digital = order.items
        assert physical.status == "payment_confirmed"

        other = SessionLocal()
        try:
            advance(other, physical.id, "preparing", "ready_to_ship", "shipped")
        finally:
            other.close()

        with pytest.raises(Conflict) as exc:
            orders.cancel_order(db, order.id)

        assert exc.value.details["items"] == [{"item_id": physical.id, "status": "shipped"}]
        db.expire_all()
        assert db.get(OrderLineItem, digital.id).status == "payment_confirmed"

    def test_service_within_24h_cannot_be_cancelled(self, db):
        soon = (utcnow() + timedelta(hours=3)).isoformat()
        order = make_order(db, [make_service_line(booking_date=soon)])
        with pytest.raises(Conflict) as exc:
            orders.cancel_order(db, order.id)
        assert "24h" in str(exc.value)

    def test_twice(self, db):
        order = make_order(db, _mixed_lines())
        orders.cancel_order(db, order.id)
        with pytest.raises(Conflict):
            orders.cancel_order(db, order.id)


class TestRefunds:
    def test_refund_after_window_is_refused(self, db):
        order = make_order(db, [make_line()])
        item_id = order.items[0].id
        delivered = utcnow() - timedelta(days=20)
        orders.confirm_payment(db, order.id)
        advance(db, item_id, "preparing", "ready_to_ship", "shipped", "delivered", now=delivered)

        assert not orders.check_refund(db, item_id).allowed
        with pytest.raises(Conflict) as exc:
            orders.request_refund(db, item_id, reason="too small")
        assert "14 days" in str(exc.value)

    def test_refund_within_window(self, db):
        order = make_order(db, [make_line()])
        item_id = order.items[0].id
        orders.confirm_payment(db, order.id)
        advance(db, item_id, "preparing", "ready_to_ship", "shipped", "delivered")

        item = orders.request_refund(db, item_id, reason="damaged", actor="user-1")
        assert item.status == "refund_requested"
        advance(db, item_id, "refunded")
        db.expire_all()
        assert db.get(Order, order.id).status == "refunded"


class TestDownloads:
    def _granted(self, db):
        order = make_order(db, [make_line("digital", variant_id="ebook", unit_price_cents=500)])
        item_id = order.items[0].id
        orders.confirm_payment(db, order.id)
        item = advance(db, item_id, "access_granted")
        return item_id, item.fulfillment_data["access_key"]

    def test_first_download_moves_to_downloaded(self, db):
        item_id, key = self._granted(db)
        result = orders.record_download(db, item_id, access_key=key)
        assert result["download_count"] == 1
        assert result["remaining"] == 4
        history = orders.transition_history(db, item_id)
        assert history[-1].to_status == "downloaded"

    def test_cap_is_enforced(self, db):
        item_id, key = self._granted(db)
        for _ in range(5):
            orders.record_download(db, item_id, access_key=key)
        with pytest.raises(Conflict):
            orders.record_download(db, item_id, access_key=key)

    def test_expired_link(self, db):
        item_id, key = self._granted(db)
        with pytest.raises(Expired):
            orders.record_download(db, item_id, access_key=key, now=utcnow() + timedelta(days=31))

    def test_wrong_key(self, db):
        item_id, _ = self._granted(db)
        with pytest.raises(NotFound):
            orders.record_download(db, item_id, access_key="guess")

    def test_key_is_required(self, db):
        item_id, _ = self._granted(db)
        for key in ("", None):
            with pytest.raises(NotFound):
                orders.record_download(db, item_id, access_key=key)
        db.expire_all()
        assert db.get(OrderLineItem, item_id).status == "access_granted"


class TestListingAndTracking:
    def _guest_order(self, db):
        cs = make_checkout_session(db, [make_line()], user_id=None, guest_email="guest@example.com")
        return orders.create_order_from_checkout(db, cs.id)

    def test_user_orders_newest_first_and_paged(self, db):
        placed = [make_order(db, [make_line()]) for _ in range(3)]
        make_order(db, [make_line()], user_id="user-2")
        first = orders.list_user_orders(db, "user-1", page=1, limit=2)
        second = orders.list_user_orders(db, "user-1", page=2, limit=2)

        assert [o.id for o in first["orders"]] == [placed[2].id, placed[1].id]
        assert [o.id for o in second["orders"]] == [placed[0].id]
        assert (first["total"], first["total_pages"]) == (3, 2)

    def test_user_orders_filtered_by_status(self, db):
        kept = make_order(db, [make_line()])
        dropped = make_order(db, [make_line()])
        orders.cancel_order(db, dropped.id)

        result = orders.list_user_orders(db, "user-1", status="cancelled")
        assert [o.id for o in result["orders"]] == [dropped.id]
        assert orders.list_user_orders(db, "user-2")["total"] == 0
        assert kept.id not in [o.id for o in result["orders"]]

    def test_bad_page(self, db):
        with pytest.raises(ValidationFailed):
            orders.list_user_orders(db, "user-1", page=0)

    def test_by_number(self, db):
        order = make_order(db, _mixed_lines())
        assert orders.get_order_by_number(db, order.order_number).id == order.id
        with pytest.raises(NotFound):
            orders.get_order_by_number(db, "ORD-00000000-000000")

    def test_merchant_sees_only_its_own_items(self, db):
        mixed = make_order(db, _mixed_lines())
        make_order(db, [make_line(merchant_id="m-3")])

        result = orders.list_merchant_orders(db, "m-2")
        assert result["total"] == 1
        ((order, items),) = result["orders"]
        assert order.id == mixed.id
        assert [it.merchant_id for it in items] == ["m-2"]

        assert [it.kind for it in orders.merchant_order_items(db, mixed.id, "m-1")] == ["physical"]
        with pytest.raises(NotFound):
            orders.merchant_order_items(db, mixed.id, "m-3")

    def test_tracking_shows_shipment_details(self, db):
        order = make_order(db, _mixed_lines())
        orders.confirm_payment(db, order.id)
        physical, _ = order.items
        advance(db, physical.id, "preparing", "ready_to_ship", "shipped",
                metadata={"tracking_number": "1Z999", "carrier": "UPS"})

        view = orders.track_order(db, order.order_number)
        assert view["order_number"] == order.order_number
        assert view["items"][0]["tracking"]["tracking_number"] == "1Z999"
        assert view["items"][0]["tracking"]["carrier"] == "UPS"
        assert view["items"][1]["tracking"] is None

    def test_guest_tracking_needs_the_checkout_email(self, db):
        order = self._guest_order(db)
        assert orders.track_order(db, order.order_number, email="Guest@Example.com")["status"] == "pending"
        for email in (None, "someone@example.com"):
            with pytest.raises(NotFound):
                orders.track_order(db, order.order_number, email=email)
