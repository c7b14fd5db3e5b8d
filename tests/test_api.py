import pytest
from httpx import ASGITransport, AsyncClient

from restaurant_engine.main import app, get_services
from restaurant_engine.models import OrderStatus, PaymentMethod

from tests.conftest import NEARBY


@pytest.fixture
async def client(services):
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def order_body(menu_item_id: int, quantity: int = 2, **overrides) -> dict:
    body = {
        "user_id": 7,
        "items": [{"menu_item_id": menu_item_id, "quantity": quantity}],
        "delivery_address": {
            "street": "4th Block, 80 Feet Road",
            "city": "Bengaluru",
            "latitude": NEARBY[0],
            "longitude": NEARBY[1],
            "contact_phone": "+91 98765 43210",
        },
        "payment_method": "cod",
    }
    body.update(overrides)
    return body


# =============================================================================
# ORDERS
# =============================================================================

async def test_place_and_fetch_order(client, seed):
    item = await seed.menu_item(price="100.00")

    response = await client.post("/api/orders", json=order_body(item))

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["total_amount"] == "260.00"
    assert data["status_info"]["label"] == "Pending"
    assert data["can_cancel"] is True
    assert data["is_active"] is True
    assert [line["quantity"] for line in data["items"]] == [2]

    fetched = await client.get(f"/api/orders/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["order_number"] == data["order_number"]


async def test_malformed_order_is_a_validation_error(client, seed):
    item = await seed.menu_item()
    response = await client.post("/api/orders", json=order_body(item, quantity=0))

    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


async def test_business_rule_violation(client, seed):
    item = await seed.menu_item(price="40.00")
    response = await client.post("/api/orders", json=order_body(item, quantity=1))

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "VALIDATION_ERROR"
    assert "Minimum order amount" in body["detail"]


async def test_unknown_order_is_404(client):
    response = await client.get("/api/orders/999")
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


async def test_status_update(client, seed):
    order = await seed.order_in(OrderStatus.PENDING)

    response = await client.post(f"/api/orders/{order.id}/status", json={"status": "confirmed"})

    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"
    assert response.json()["status_info"]["progress_percentage"] == 25


async def test_invalid_transition_is_409(client, seed):
    order = await seed.order_in(OrderStatus.PENDING)

    response = await client.post(f"/api/orders/{order.id}/status", json={"status": "delivered"})

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "INVALID_TRANSITION"
    assert body["context"]["current_status"] == "pending"


async def test_dispatch_without_couriers(client, seed):
    order = await seed.order_in(OrderStatus.READY_FOR_PICKUP, with_courier=False)

    response = await client.post(f"/api/orders/{order.id}/dispatch")

    assert response.status_code == 200
    assert response.json()["assigned"] is False


async def test_manual_assignment(client, seed):
    order = await seed.order_in(OrderStatus.READY_FOR_PICKUP, with_courier=False)
    courier = await seed.courier()

    response = await client.post(
        f"/api/orders/{order.id}/assign", json={"delivery_person_id": courier}
    )

    assert response.status_code == 200
    assert response.json()["delivery_person_id"] == courier


async def test_settle_missing_tip(client, seed):
    order = await seed.order_in(OrderStatus.OUT_FOR_DELIVERY)
    response = await client.post(f"/api/orders/{order.id}/tip", json={"success": True})
    assert response.status_code == 404


# =============================================================================
# PAYMENTS
# =============================================================================

async def test_payment_webhook_flow(client, seed):
    order = await seed.order_in(OrderStatus.PENDING, method=PaymentMethod.UPI)

    recorded = await client.post(
        "/api/payments",
        json={
            "order_id": order.id,
            "method": "upi",
            "amount": str(order.total_amount),
            "transaction_id": "txn-web",
        },
    )
    assert recorded.status_code == 201
    assert recorded.json()["status"] == "pending"

    webhook = {"transaction_id": "txn-web", "status": "succeeded", "gateway_transaction_id": "pi_web"}
    confirmed = await client.post("/webhook/payments", json=webhook)
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "completed"

    replay = await client.post("/webhook/payments", json=webhook)
    assert replay.status_code == 200

    conflicting = await client.post("/webhook/payments", json={**webhook, "status": "failed"})
    assert conflicting.status_code == 409
    assert conflicting.json()["error"] == "CONFLICT"

    assert (await seed.order(order.id)).status == OrderStatus.CONFIRMED


async def test_charge_and_refund(client, seed):
    order = await seed.order_in(OrderStatus.PENDING, method=PaymentMethod.UPI)
    recorded = await client.post(
        "/api/payments",
        json={
            "order_id": order.id,
            "method": "upi",
            "amount": str(order.total_amount),
            "transaction_id": "txn-charge",
        },
    )
    payment_id = recorded.json()["id"]

    charged = await client.post("/api/payments/txn-charge/charge")
    assert charged.json()["status"] == "completed"

    too_much = await client.post(f"/api/payments/{payment_id}/refund", json={"amount": "9999.00"})
    assert too_much.status_code == 400

    refunded = await client.post(f"/api/payments/{payment_id}/refund", json={"amount": "60.00"})
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "partially_refunded"
    assert refunded.json()["refunded_amount"] == "60.00"


async def test_unknown_webhook_transaction(client):
    response = await client.post(
        "/webhook/payments", json={"transaction_id": "nope", "status": "completed"}
    )
    assert response.status_code == 404


# =============================================================================
# DELIVERY PERSONNEL
# =============================================================================

async def test_courier_location_and_availability(client, seed):
    courier = await seed.courier()

    moved = await client.put(
        f"/api/delivery-personnel/{courier}/location", json={"latitude": 12.98, "longitude": 77.6}
    )
    assert moved.status_code == 200
    assert moved.json()["current_latitude"] == pytest.approx(12.98)

    bad = await client.put(
        f"/api/delivery-personnel/{courier}/location", json={"latitude": 95, "longitude": 77.6}
    )
    assert bad.status_code == 400

    offline = await client.put(
        f"/api/delivery-personnel/{courier}/availability", json={"status": "offline"}
    )
    assert offline.json()["status"] == "offline"

    busy = await client.put(
        f"/api/delivery-personnel/{courier}/availability", json={"status": "busy"}
    )
    assert busy.status_code == 400


# =============================================================================
# CONFIGURATION & REFERENCE
# =============================================================================

async def test_public_config(client):
    response = await client.get("/api/config")
    assert response.status_code == 200
    assert "restaurant_name" in response.json()
    assert "restaurant_latitude" not in response.json()


async def test_admin_config_update(client, services):
    response = await client.put("/api/admin/config/tax_percentage", json={"value": "7.5"})
    assert response.status_code == 200
    assert response.json()["value"] == "7.5"
    assert str(services.config.tax_percentage) == "7.5"

    rejected = await client.put("/api/admin/config/tax_percentage", json={"value": "-3"})
    assert rejected.status_code == 400


async def test_status_reference(client):
    response = await client.get("/api/reference/statuses")
    data = response.json()
    assert [s["value"] for s in data["order_statuses"]][:2] == ["pending", "confirmed"]
    cod = next(m for m in data["payment_methods"] if m["value"] == "cod")
    assert cod["is_online"] is False


async def test_health_reports_database(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "healthy"
    assert data["payment_service"] == "healthy"
    assert data["status"] in ("operational", "degraded")
