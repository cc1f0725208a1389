import jwt
import pytest
from fastapi.testclient import TestClient

from factories import add_stock, advance, make_checkout_session, make_line, make_order
from orderflow.api.deps import get_processor, get_reservations
from orderflow.core.config import settings
from orderflow.db.session import SessionLocal
from orderflow.main import app
from orderflow.outbox.handlers import HandlerRegistry
from orderflow.outbox.processor import OutboxProcessor
from orderflow.services import orders

INTERNAL = {"X-Internal-Key": settings.SVC_INTERNAL_KEY}


def bearer(sub="admin-1", role="admin"):
    token = jwt.encode({"sub": sub, "role": role}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(reservations):
    processor = OutboxProcessor(SessionLocal, registry=HandlerRegistry())
    app.dependency_overrides[get_reservations] = lambda: reservations
    app.dependency_overrides[get_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_liveness(self, client):
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/order/health").json() == {"status": "ok"}

    def test_outbox_health(self, client):
        r = client.get("/order/v1/outbox/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestCheckoutRoutes:
    def test_start_and_read_back(self, client, db):
        add_stock(db, "var-A", 4)
        body = {
            "user_id": "user-1",
            "items": [{
                "product_id": "p-1", "variant_id": "var-A", "qty": 2, "unit_price_cents": 1000,
                "merchant_id": "m-1", "kind": "physical",
            }],
        }
        r = client.post("/order/v1/checkout/sessions", json=body)
        assert r.status_code == 201, r.text
        session = r.json()
        assert session["status"] == "in_progress"
        assert session["totals"]["total_cents"] == 2000

        r = client.get(f"/order/v1/checkout/sessions/{session['id']}")
        assert r.json()["id"] == session["id"]

    def test_out_of_stock_is_a_conflict(self, client, db):
        add_stock(db, "var-A", 1)
        body = {
            "user_id": "user-1",
            "items": [{
                "product_id": "p-1", "variant_id": "var-A", "qty": 2, "unit_price_cents": 1000,
                "merchant_id": "m-1", "kind": "physical",
            }],
        }
        r = client.post("/order/v1/checkout/sessions", json=body)
        assert r.status_code == 409
        assert r.json()["error"] == "insufficient_resource"
        assert r.json()["errors"] == ["insufficient inventory for variant var-A"]

    def test_payment_callback_requires_a_trusted_caller(self, client):
        r = client.post("/order/v1/checkout/payment-callback", json={"outcome": "succeeded"})
        assert r.status_code == 401
        r = client.post("/order/v1/checkout/payment-callback", json={"outcome": "succeeded"},
                        headers=bearer(role="customer"))
        assert r.status_code == 403

    def test_payment_callback_needs_the_session_id(self, client):
        r = client.post("/order/v1/checkout/payment-callback", json={"outcome": "succeeded"}, headers=INTERNAL)
        assert r.status_code == 422
        assert r.json()["error"] == "validation"

    def test_successful_payment_creates_the_order(self, client, db):
        add_stock(db, "var-A", 4)
        cs = make_checkout_session(db, [make_line(variant_id="var-A", qty=2)])
        payload = {"outcome": "succeeded", "intent_ref": "pi_9", "metadata": {"checkout_session_id": cs.id}}

        r = client.post("/order/v1/checkout/payment-callback", json=payload, headers=INTERNAL)
        assert r.status_code == 200, r.text
        order = r.json()["order"]
        assert order["payment_status"] == "captured"
        assert [it["status"] for it in order["items"]] == ["payment_confirmed"]

        again = client.post("/order/v1/checkout/payment-callback", json=payload, headers=INTERNAL)
        assert again.json()["order"]["id"] == order["id"]


class TestOrderRoutes:
    def test_get_requires_a_token(self, client, db):
        order = make_order(db, [make_line()])
        assert client.get(f"/order/v1/orders/{order.id}").status_code == 401
        r = client.get(f"/order/v1/orders/{order.id}", headers=bearer(role="customer"))
        assert r.status_code == 200
        assert r.json()["order_number"] == order.order_number

    def test_missing_order(self, client):
        r = client.get("/order/v1/orders/999", headers=bearer())
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"

    def test_illegal_transition_lists_allowed_targets(self, client, db):
        order = make_order(db, [make_line()])
        item_id = order.items[0].id
        r = client.post(f"/order/v1/orders/{order.id}/items/{item_id}/transition",
                        json={"to_status": "shipped"}, headers=bearer(sub="merchant-1", role="merchant"))
        assert r.status_code == 409
        assert r.json()["allowed"] == ["payment_confirmed", "cancelled"]

    def test_transition_and_history(self, client, db):
        order = make_order(db, [make_line()])
        item_id = order.items[0].id
        headers = bearer(sub="merchant-1", role="merchant")

        r = client.post(f"/order/v1/orders/{order.id}/items/{item_id}/transition",
                        json={"to_status": "payment_confirmed"}, headers=headers)
        assert r.status_code == 200
        assert r.json()["status"] == "payment_confirmed"

        r = client.get(f"/order/v1/orders/{order.id}/items/{item_id}/history", headers=headers)
        assert [(h["from_status"], h["to_status"]) for h in r.json()] == [
            (None, "pending"),
            ("pending", "payment_confirmed"),
        ]
        assert r.json()[-1]["actor"] == "merchant-1"

    def test_refund_eligibility(self, client, db):
        order = make_order(db, [make_line()])
        r = client.get(f"/order/v1/orders/{order.id}/items/{order.items[0].id}/refund-eligibility",
                       headers=bearer(role="customer"))
        assert r.json() == {"eligible": False, "reason": "Item has not been delivered"}

    def test_cancel(self, client, db):
        order = make_order(db, [make_line(), make_line("digital", variant_id="ebook")])
        r = client.post(f"/order/v1/orders/{order.id}/cancel", json={"reason": "duplicate"}, headers=bearer())
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"

    def test_download(self, client, db):
        order = make_order(db, [make_line("digital", variant_id="ebook")])
        item_id = order.items[0].id
        orders.confirm_payment(db, order.id)
        key = advance(db, item_id, "access_granted").fulfillment_data["access_key"]

        r = client.post(f"/order/v1/downloads/{item_id}", params={"key": key})
        assert r.status_code == 200
        assert r.json()["download_count"] == 1
        assert client.post(f"/order/v1/downloads/{item_id}", params={"key": "nope"}).status_code == 404


class TestOrderLookupRoutes:
    def test_my_orders(self, client, db):
        order = make_order(db, [make_line()])
        make_order(db, [make_line()], user_id="user-2")

        r = client.get("/order/v1/orders", params={"limit": 5}, headers=bearer(sub="user-1", role="customer"))
        assert r.status_code == 200
        body = r.json()
        assert [o["id"] for o in body["orders"]] == [order.id]
        assert (body["page"], body["total"], body["total_pages"]) == (1, 1, 1)

    def test_by_number_is_owner_only(self, client, db):
        order = make_order(db, [make_line()])
        url = f"/order/v1/orders/by-number/{order.order_number}"

        assert client.get(url, headers=bearer(sub="user-1", role="customer")).json()["id"] == order.id
        assert client.get(url, headers=bearer(sub="user-2", role="customer")).status_code == 403
        assert client.get(url, headers=bearer()).status_code == 200
        assert client.get("/order/v1/orders/by-number/ORD-0", headers=bearer()).status_code == 404

    def test_guest_tracking_is_public_with_the_email(self, client, db):
        cs = make_checkout_session(db, [make_line()], user_id=None, guest_email="guest@example.com")
        order = orders.create_order_from_checkout(db, cs.id)
        url = f"/order/v1/orders/track/{order.order_number}"

        r = client.get(url, params={"email": "guest@example.com"})
        assert r.status_code == 200
        assert r.json()["items"][0]["status"] == "pending"
        assert client.get(url).status_code == 404

    def test_merchant_listing(self, client, db):
        order = make_order(db, [make_line(merchant_id="m-1"), make_line("digital", variant_id="ebook", merchant_id="m-2")])
        merchant = bearer(sub="m-2", role="merchant")

        r = client.get("/order/v1/merchant/orders", headers=merchant)
        assert r.status_code == 200
        (listed,) = r.json()["orders"]
        assert listed["id"] == order.id
        assert [it["merchant_id"] for it in listed["items"]] == ["m-2"]

        items = client.get(f"/order/v1/merchant/orders/{order.id}/items", headers=merchant).json()
        assert [it["kind"] for it in items] == ["digital"]
        assert client.get("/order/v1/merchant/orders", headers=bearer(role="customer")).status_code == 403
        other = client.get(f"/order/v1/merchant/orders/{order.id}/items", headers=bearer(sub="m-9", role="merchant"))
        assert other.status_code == 404


class TestOutboxRoutes:
    def test_process_drains_pending_events(self, client, db):
        make_order(db, [make_line()])
        r = client.post("/order/v1/outbox/process", headers=INTERNAL)
        assert r.status_code == 200
        assert r.json()["status"] == "ok"
        assert r.json()["processed"] == 1

        metrics = client.get("/order/v1/outbox/metrics", headers=INTERNAL).json()
        assert metrics["pending"] == 0

    def test_reprocess_unknown_dlq_entry(self, client):
        r = client.post("/order/v1/outbox/dlq/42/reprocess", headers=bearer())
        assert r.status_code == 404
