"""
Integration tests through the HTTP API.
"""
import uuid
from typing import Any, Dict

import pytest

from tests.helpers import ADMIN_HEADERS, gateway_event, sign_payload

ADDRESS: Dict[str, Any] = {
    "first_name": "Grace",
    "last_name": "Hopper",
    "address1": "1 Navy Way",
    "city": "Arlington",
    "state": "VA",
    "zip_code": "22201",
    "country": "US",
}


def _user_headers(user_id: uuid.UUID) -> Dict[str, str]:
    return {"X-User-ID": str(user_id)}


async def _create_order(client: Any, make_product: Any, make_cart: Any, **body: Any) -> tuple:
    user_id = uuid.uuid4()
    product = await make_product(price_cents=1500, on_hand=5)
    await make_cart(user_id, [(product, 2)])
    payload = {"shipping_address": ADDRESS, "payment_method": "credit_card"}
    payload.update(body)
    response = await client.post("/orders", json=payload, headers=_user_headers(user_id))
    assert response.status_code == 201, response.text
    return response.json(), user_id, product


class TestOrderEndpoints:
    """Test suite for order routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_fetch_order(self, client: Any, make_product: Any, make_cart: Any) -> None:
        order, user_id, product = await _create_order(
            client, make_product, make_cart, tax_rate="0.1", shipping_cents=500
        )

        assert order["status"] == "pending"
        assert order["subtotal_cents"] == 3000
        assert order["total_cents"] == 3000 + 300 + 500
        assert order["items"][0]["product_id"] == str(product.id)
        assert order["admin_notes"] is None

        own = await client.get(f"/orders/{order['id']}", headers=_user_headers(user_id))
        assert own.status_code == 200
        assert own.json()["order_number"] == order["order_number"]

        foreign = await client.get(f"/orders/{order['id']}", headers=_user_headers(uuid.uuid4()))
        assert foreign.status_code == 404
        assert foreign.json()["error"] == "order_not_found"

        admin = await client.get(f"/orders/{order['id']}", headers=ADMIN_HEADERS)
        assert admin.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_identity_is_required(self, client: Any) -> None:
        response = await client.post(
            "/orders", json={"shipping_address": ADDRESS, "payment_method": "credit_card"}
        )
        assert response.status_code == 401

        bad = await client.get("/orders", headers={"X-User-ID": "not-a-uuid"})
        assert bad.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validation_and_stock_errors(
        self, client: Any, make_product: Any, make_cart: Any
    ) -> None:
        user_id = uuid.uuid4()
        empty = await client.post(
            "/orders",
            json={"shipping_address": ADDRESS, "payment_method": "credit_card"},
            headers=_user_headers(user_id),
        )
        assert empty.status_code == 400
        assert empty.json()["error"] == "empty_cart"

        product = await make_product(on_hand=1)
        await make_cart(user_id, [(product, 3)])
        short = await client.post(
            "/orders",
            json={"shipping_address": ADDRESS, "payment_method": "credit_card"},
            headers=_user_headers(user_id),
        )
        assert short.status_code == 409
        assert short.json()["error"] == "insufficient_stock"

        invalid = await client.post(
            "/orders",
            json={"shipping_address": {**ADDRESS, "country": "USA"}, "payment_method": "credit_card"},
            headers=_user_headers(user_id),
        )
        assert invalid.status_code == 400
        assert invalid.json()["fields"][0]["field"] == "shipping_address.country"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_only_own_orders(self, client: Any, make_product: Any, make_cart: Any) -> None:
        order, user_id, _ = await _create_order(client, make_product, make_cart)
        await _create_order(client, make_product, make_cart)

        own = await client.get("/orders", headers=_user_headers(user_id))
        assert own.status_code == 200
        assert own.json()["total"] == 1
        assert own.json()["items"][0]["id"] == order["id"]

        everyone = await client.get("/orders", headers=ADMIN_HEADERS)
        assert everyone.json()["total"] == 2

        invalid = await client.get("/orders?sort_by=colour", headers=ADMIN_HEADERS)
        assert invalid.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_customer_cancellation(self, client: Any, make_product: Any, make_cart: Any) -> None:
        order, user_id, product = await _create_order(client, make_product, make_cart)

        cancelled = await client.post(
            f"/orders/{order['id']}/cancel",
            json={"reason": "ordered twice"},
            headers=_user_headers(user_id),
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["cancellation_reason"] == "ordered twice"

        again = await client.post(f"/orders/{order['id']}/cancel", headers=_user_headers(user_id))
        assert again.status_code == 409

        stock = await client.get(f"/inventory/{product.id}")
        assert stock.json() == {
            "product_id": str(product.id),
            "on_hand": 5,
            "reserved": 0,
            "available": 5,
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_routes_need_api_key(
        self, client: Any, make_product: Any, make_cart: Any
    ) -> None:
        order, user_id, _ = await _create_order(client, make_product, make_cart)

        response = await client.patch(
            f"/orders/{order['id']}/status",
            json={"status": "confirmed"},
            headers=_user_headers(user_id),
        )
        assert response.status_code == 403

        wrong_key = await client.patch(
            f"/orders/{order['id']}/status",
            json={"status": "confirmed"},
            headers={"X-API-Key": "guess"},
        )
        assert wrong_key.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cash_order_fulfilment(self, client: Any, make_product: Any, make_cart: Any) -> None:
        order, user_id, _ = await _create_order(client, make_product, make_cart, payment_method="cash")
        base = f"/orders/{order['id']}"

        confirmed = await client.patch(f"{base}/status", json={"status": "confirmed"}, headers=ADMIN_HEADERS)
        assert confirmed.json()["status"] == "confirmed"

        shipped = await client.put(
            f"{base}/shipping",
            json={"tracking_number": "1Z999", "carrier": "UPS"},
            headers=ADMIN_HEADERS,
        )
        assert shipped.json()["status"] == "shipped"

        delivered = await client.patch(f"{base}/delivery", json={"status": "delivered"}, headers=ADMIN_HEADERS)
        assert delivered.json()["status"] == "delivered"
        assert delivered.json()["payment_status"] == "paid"

        note = await client.post(
            f"{base}/notes", json={"note": "Left with neighbour", "is_public": True}, headers=ADMIN_HEADERS
        )
        assert note.status_code == 201
        await client.post(f"{base}/notes", json={"note": "Check ID next time"}, headers=ADMIN_HEADERS)

        customer_view = await client.get(f"{base}/events", headers=_user_headers(user_id))
        admin_view = await client.get(f"{base}/events", headers=ADMIN_HEADERS)
        assert all(event["is_public"] for event in customer_view.json())
        assert len(admin_view.json()) > len(customer_view.json())

        hidden = await client.get(base, headers=_user_headers(user_id))
        assert hidden.json()["admin_notes"] is None
        assert (await client.get(base, headers=ADMIN_HEADERS)).json()["admin_notes"] == "Check ID next time"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_illegal_transition_is_conflict(
        self, client: Any, make_product: Any, make_cart: Any
    ) -> None:
        order, _, _ = await _create_order(client, make_product, make_cart)

        response = await client.patch(
            f"/orders/{order['id']}/delivery", json={"status": "delivered"}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state_transition"


class TestPaymentEndpoints:
    """Test suite for checkout, webhook and refund routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_webhook_refund(
        self, client: Any, make_product: Any, make_cart: Any
    ) -> None:
        order, user_id, product = await _create_order(client, make_product, make_cart)

        checkout = await client.post(
            "/payments/checkout-session",
            json={"order_id": order["id"], "customer_email": "grace@example.com"},
            headers=_user_headers(user_id),
        )
        assert checkout.status_code == 201
        session_id = checkout.json()["session_id"]

        payload = gateway_event(
            "checkout.session.completed",
            {
                "id": session_id,
                "payment_status": "paid",
                "payment_intent": "pi_test_123",
                "amount_total": order["total_cents"],
                "metadata": {"order_id": order["id"]},
            },
        )
        webhook = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
        )
        assert webhook.status_code == 200
        assert webhook.json()["status"] == "success"

        by_session = await client.get(f"/orders/by-session/{session_id}", headers=_user_headers(user_id))
        assert by_session.json()["status"] == "confirmed"
        assert by_session.json()["payment_status"] == "paid"

        confirm = await client.post(
            "/payments/confirm",
            json={"order_id": order["id"], "session_id": session_id},
            headers=_user_headers(user_id),
        )
        assert confirm.json()["status"] == "already_paid"

        refund = await client.post(
            f"/payments/{checkout.json()['payment_id']}/refund",
            json={"reason": "customer request"},
            headers=ADMIN_HEADERS,
        )
        assert refund.status_code == 200
        assert refund.json()["order_status"] == "refunded"
        assert refund.json()["refunded_cents"] == order["total_cents"]

        stock = await client.get(f"/inventory/{product.id}")
        assert stock.json()["on_hand"] == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_forged_webhook_is_rejected(self, client: Any) -> None:
        payload = gateway_event("checkout.session.completed", {"id": "cs_test_123"})

        response = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, secret="whsec_forged")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirm_someone_elses_session(
        self, client: Any, make_product: Any, make_cart: Any
    ) -> None:
        order, user_id, _ = await _create_order(client, make_product, make_cart)
        await client.post(
            "/payments/checkout-session", json={"order_id": order["id"]}, headers=_user_headers(user_id)
        )

        response = await client.post(
            "/payments/confirm",
            json={"order_id": order["id"], "session_id": "cs_test_123"},
            headers=_user_headers(uuid.uuid4()),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "payment_mismatch"


class TestMonitoringEndpoints:
    """Test suite for health and metrics routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: Any) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "disabled"

        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_and_root(self, client: Any) -> None:
        metrics = await client.get("/metrics")
        assert metrics.status_code == 200
        assert "orders_created_total" in metrics.text

        root = await client.get("/")
        assert root.json()["status"] == "operational"
        assert "X-Request-ID" in root.headers
