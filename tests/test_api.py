"""
API tests through the ASGI app with in-memory collaborators.
"""
from typing import Any, AsyncGenerator, Callable, Dict, Tuple

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from marketplace.api import create_app
from marketplace.api.dependencies import build_services
from marketplace.config import Settings
from marketplace.core import InMemoryOrderStore
from marketplace.domain import Order, OrderStatus
from marketplace.integrations import InMemoryCatalog

from conftest import JWT_SECRET, FakeGatewayClient

MakeEvent = Callable[..., Tuple[bytes, str]]


def bearer(user_id: str, role: str = "user", email: str = "buyer@example.com") -> Dict[str, str]:
    token = jwt.encode({"sub": user_id, "role": role, "email": email}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


OWNER = bearer("user-1")
STRANGER = bearer("user-2", email="someone@example.com")
ADMIN = bearer("admin-1", role="admin", email="admin@example.com")


@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    store: InMemoryOrderStore,
    catalog: InMemoryCatalog,
    gateway: FakeGatewayClient,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    services = build_services(test_settings, store=store, catalog=catalog, gateway=gateway)
    app = create_app(settings=test_settings, services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def place_order(client: AsyncClient) -> Dict[str, Any]:
    response = await client.post(
        "/orders",
        json={"items": [{"productId": "sku-widget", "quantity": 2}]},
        headers=OWNER,
    )
    assert response.status_code == 201
    return response.json()


class TestOrderEndpoints:
    """Order creation and reads."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order(self, client: AsyncClient) -> None:
        body = await place_order(client)

        assert body["ownerId"] == "user-1"
        assert body["status"] == "Created"
        assert body["lineItems"] == [{"productId": "sku-widget", "quantity": 2, "unitPrice": 36.0}]
        assert body["subtotal"] == 72.0
        assert body["tax"] == 18.0
        assert body["shipping"] == 10.0
        assert body["total"] == 100.0
        assert body["isPaid"] is False
        assert body["paidAt"] is None
        assert body["paymentReference"] is None
        assert body["isDelivered"] is False
        assert body["version"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_cannot_set_prices(self, client: AsyncClient) -> None:
        response = await client.post(
            "/orders",
            json={
                "items": [{"productId": "sku-widget", "quantity": 2, "unitPrice": 0.01}],
                "totalPrice": 0.01,
                "taxPrice": 0,
            },
            headers=OWNER,
        )

        assert response.status_code == 201
        assert response.json()["total"] == 100.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"items": [{"productId": "sku-widget", "quantity": 0}]},
            {"items": [{"productId": "sku-widget", "quantity": "two"}]},
            {"items": []},
            {},
        ],
    )
    async def test_invalid_order_body(self, client: AsyncClient, payload: Dict[str, Any]) -> None:
        response = await client.post("/orders", json=payload, headers=OWNER)

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_product(self, client: AsyncClient) -> None:
        response = await client.post(
            "/orders",
            json={"items": [{"productId": "sku-missing", "quantity": 1}]},
            headers=OWNER,
        )

        assert response.status_code == 404
        assert response.json()["error"] == "invalid_item"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authentication_required(self, client: AsyncClient) -> None:
        missing = await client.get("/orders/mine")
        forged = await client.get(
            "/orders/mine",
            headers={
                "Authorization": "Bearer "
                + jwt.encode({"sub": "user-1"}, "some-other-secret-of-32-bytes-or-more", algorithm="HS256")
            },
        )

        assert missing.status_code == 401
        assert missing.json()["error"] == "unauthorized"
        assert forged.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reads(self, client: AsyncClient) -> None:
        order = await place_order(client)

        mine = await client.get("/orders/mine", headers=OWNER)
        own = await client.get(f"/orders/{order['id']}", headers=OWNER)
        foreign = await client.get(f"/orders/{order['id']}", headers=STRANGER)
        missing = await client.get("/orders/does-not-exist", headers=OWNER)
        listing_as_user = await client.get("/orders", headers=OWNER)
        listing_as_admin = await client.get("/orders", headers=ADMIN)

        assert [o["id"] for o in mine.json()] == [order["id"]]
        assert own.json()["id"] == order["id"]
        assert foreign.status_code == 401
        assert missing.status_code == 404
        assert missing.json()["error"] == "not_found"
        assert listing_as_user.status_code == 401
        assert [o["id"] for o in listing_as_admin.json()] == [order["id"]]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel(self, client: AsyncClient) -> None:
        order = await place_order(client)

        foreign = await client.put(f"/orders/{order['id']}/cancel", headers=STRANGER)
        response = await client.put(f"/orders/{order['id']}/cancel", headers=OWNER)

        assert foreign.status_code == 401
        assert response.status_code == 200
        assert response.json()["status"] == "Cancelled"


class TestPaymentEndpoints:
    """Payment intent, confirmation and webhook endpoints."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_intent(self, client: AsyncClient, store: InMemoryOrderStore) -> None:
        order = await place_order(client)

        response = await client.post(
            "/payments/create-payment-intent", json={"orderId": order["id"]}, headers=OWNER
        )

        assert response.status_code == 200
        assert response.json() == {"clientSecret": "pi_1_secret_test"}
        assert (await store.find_by_id(order["id"])).status == OrderStatus.AWAITING_PAYMENT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_intent_errors(self, client: AsyncClient) -> None:
        order = await place_order(client)

        missing = await client.post(
            "/payments/create-payment-intent", json={"orderId": "nope"}, headers=OWNER
        )
        foreign = await client.post(
            "/payments/create-payment-intent", json={"orderId": order["id"]}, headers=STRANGER
        )

        assert missing.status_code == 404
        assert foreign.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_payment(
        self, client: AsyncClient, gateway: FakeGatewayClient
    ) -> None:
        order = await place_order(client)
        await client.post(
            "/payments/create-payment-intent", json={"orderId": order["id"]}, headers=OWNER
        )
        gateway.set_intent("pi_1", amount=10000, order_id=order["id"], payer_email=None)

        response = await client.put(
            "/payments/confirm-payment",
            json={"orderId": order["id"], "paymentId": "pi_1"},
            headers=OWNER,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "Paid"
        assert body["isPaid"] is True
        assert body["paidAt"] is not None
        assert body["paymentReference"]["id"] == "pi_1"
        assert body["paymentReference"]["status"] == "succeeded"
        assert body["paymentReference"]["email"] == "buyer@example.com"
        assert body["paymentReference"]["updateTime"] == body["paidAt"]

        again = await client.post(
            "/payments/create-payment-intent", json={"orderId": order["id"]}, headers=OWNER
        )
        assert again.status_code == 400
        assert again.json()["error"] == "already_paid"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_by_other_user(
        self, client: AsyncClient, store: InMemoryOrderStore
    ) -> None:
        order = await place_order(client)

        response = await client.put(
            "/payments/confirm-payment",
            json={"orderId": order["id"], "paymentId": "pi_1"},
            headers=STRANGER,
        )

        assert response.status_code == 401
        assert (await store.find_by_id(order["id"])).version == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_marks_order_paid(
        self,
        client: AsyncClient,
        store: InMemoryOrderStore,
        awaiting_order: Order,
        make_event: MakeEvent,
    ) -> None:
        raw, signature = make_event(order_id=awaiting_order.id)

        response = await client.post(
            "/payments/webhook",
            content=raw,
            headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert (await store.find_by_id(awaiting_order.id)).status == OrderStatus.PAID

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_bad_signature_is_plain_text_400(
        self,
        client: AsyncClient,
        store: InMemoryOrderStore,
        awaiting_order: Order,
        make_event: MakeEvent,
    ) -> None:
        raw, _ = make_event(order_id=awaiting_order.id)

        forged = await client.post(
            "/payments/webhook", content=raw, headers={"Stripe-Signature": "v1=deadbeef"}
        )
        unsigned = await client.post("/payments/webhook", content=raw)

        for response in (forged, unsigned):
            assert response.status_code == 400
            assert response.headers["content-type"].startswith("text/plain")
            assert response.text.startswith("Webhook Error")
        assert (await store.find_by_id(awaiting_order.id)) == awaiting_order

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_amount_mismatch(
        self, client: AsyncClient, awaiting_order: Order, make_event: MakeEvent
    ) -> None:
        raw, signature = make_event(order_id=awaiting_order.id, amount=1)

        response = await client.post(
            "/payments/webhook", content=raw, headers={"Stripe-Signature": signature}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "amount_mismatch"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_unknown_event_acknowledged(
        self, client: AsyncClient, make_event: MakeEvent
    ) -> None:
        raw, signature = make_event("customer.created")

        response = await client.post(
            "/payments/webhook", content=raw, headers={"Stripe-Signature": signature}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_for_cancelled_order_acknowledged(
        self,
        client: AsyncClient,
        store: InMemoryOrderStore,
        awaiting_order: Order,
        make_event: MakeEvent,
    ) -> None:
        cancelled = await client.put(f"/orders/{awaiting_order.id}/cancel", headers=OWNER)
        assert cancelled.status_code == 200
        raw, signature = make_event(order_id=awaiting_order.id)

        response = await client.post(
            "/payments/webhook", content=raw, headers={"Stripe-Signature": signature}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert (await store.find_by_id(awaiting_order.id)).status == OrderStatus.CANCELLED


class TestAdminEndpoints:
    """Administrative status changes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fulfilment(
        self,
        client: AsyncClient,
        awaiting_order: Order,
        make_event: MakeEvent,
    ) -> None:
        raw, signature = make_event(order_id=awaiting_order.id)
        await client.post("/payments/webhook", content=raw, headers={"Stripe-Signature": signature})

        processing = await client.put(
            f"/admin/orders/{awaiting_order.id}/status",
            json={"status": "Processing"},
            headers=ADMIN,
        )
        delivered = await client.put(f"/admin/orders/{awaiting_order.id}/deliver", headers=ADMIN)

        assert processing.status_code == 200
        assert processing.json()["status"] == "Processing"
        assert delivered.status_code == 200
        assert delivered.json()["isDelivered"] is True
        assert delivered.json()["deliveredAt"] is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_transition_is_409(
        self, client: AsyncClient, awaiting_order: Order
    ) -> None:
        response = await client.put(
            f"/admin/orders/{awaiting_order.id}/status",
            json={"status": "Delivered"},
            headers=ADMIN,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_is_400(self, client: AsyncClient, awaiting_order: Order) -> None:
        response = await client.put(
            f"/admin/orders/{awaiting_order.id}/status",
            json={"status": "Shipped"},
            headers=ADMIN,
        )

        assert response.status_code == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_admin_routes_reject_users(
        self, client: AsyncClient, awaiting_order: Order
    ) -> None:
        response = await client.put(f"/admin/orders/{awaiting_order.id}/deliver", headers=OWNER)

        assert response.status_code == 401


class TestMonitoringEndpoints:
    """Health and metrics."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        health = await client.get("/health")
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert health.json()["status"] == "healthy"
        assert live.json()["status"] == "alive"
        assert ready.status_code == 200

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        await place_order(client)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "orders_created_total" in response.text

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_id_header(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_body_documented(self, client: AsyncClient) -> None:
        response = await client.get("/openapi.json")

        schema = response.json()
        assert "ErrorResponse" in schema["components"]["schemas"]
        create = schema["paths"]["/payments/create-payment-intent"]["post"]["responses"]
        assert create["409"]["content"]["application/json"]["schema"] == {
            "$ref": "#/components/schemas/ErrorResponse"
        }
