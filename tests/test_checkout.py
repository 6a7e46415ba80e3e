"""Shop API checkout saga and order history."""

import asyncio
import logging

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.shared import errors
from services.shared.auth import principal_from_claims
from services.shop_api.app import commands
from services.shop_api.app.cart import CartStore
from services.shop_api.app.checkout import CheckoutOrchestrator
from services.shop_api.app.main import create_app
from services.shop_api.app.schema import init_db

from conftest import CLAIM_SETS

ADDRESS = {"street": "1 Infinite Loop", "city": "Cupertino", "zip": "95014", "country": "US"}


@pytest.fixture
def client(settings, transport):
    with TestClient(create_app(settings, transport=transport)) as c:
        yield c


@pytest.fixture
def user_headers(make_token, bearer):
    return bearer(make_token())


def fill_cart(client):
    client.post("/api/cart", json={"productId": 1, "quantity": 2})
    client.post("/api/cart", json={"productId": 4, "quantity": 1})


def checkout(client, headers, **overrides):
    payload = {"shippingAddress": ADDRESS, "paymentMethod": "credit-card", **overrides}
    return client.post("/api/checkout", json=payload, headers=headers)


class TestHappyPath:
    def test_creates_order_and_clears_cart(self, client, user_headers):
        fill_cart(client)

        response = checkout(client, user_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        order = body["order"]
        assert order["userId"] == "user-123"
        assert order["total"] == 5277.0
        assert order["status"] == "pending"
        assert order["paymentMethod"] == "credit-card"
        assert order["shippingAddress"] == ADDRESS
        assert order["items"] == [
            {"productId": 1, "productName": 'MacBook Pro 16"', "quantity": 2, "price": 2499.0},
            {"productId": 4, "productName": "AirPods Pro", "quantity": 1, "price": 279.0},
        ]
        assert client.get("/api/cart").json() == []

    def test_notifies_with_service_token(self, client, user_headers, network):
        fill_cart(client)

        order = checkout(client, user_headers).json()["order"]

        assert network.token_requests == [
            {"grant_type": "client_credentials", "client_id": "shop-api", "client_secret": "shop-api-secret"}
        ]
        assert network.notification_headers == ["Bearer service-token-abc"]
        notification = network.notifications[0]
        assert notification["orderId"] == order["id"]
        assert notification["userEmail"] == "john@example.com"
        assert notification["userName"] == "John Doe"
        assert notification["total"] == 5277.0
        assert notification["timestamp"] == order["createdAt"]

    def test_service_token_is_reused_across_checkouts(self, client, user_headers, network):
        fill_cart(client)
        checkout(client, user_headers)
        fill_cart(client)
        checkout(client, user_headers)

        assert len(network.token_requests) == 1
        assert len(network.notifications) == 2

    def test_order_history(self, client, user_headers):
        fill_cart(client)
        first = checkout(client, user_headers).json()["order"]
        client.post("/api/cart", json={"productId": 9, "quantity": 1})
        second = checkout(client, user_headers).json()["order"]

        orders = client.get("/api/orders", headers=user_headers).json()

        assert [o["id"] for o in orders] == [second["id"], first["id"]]
        assert orders[1]["items"] == first["items"]
        assert orders[1]["total"] == first["total"]

        single = client.get(f"/api/orders/{first['id']}", headers=user_headers)
        assert single.status_code == 200
        assert single.json()["shippingAddress"] == ADDRESS


class TestPreconditions:
    def test_unauthenticated_comes_first(self, client):
        assert checkout(client, {}).status_code == 401

    def test_empty_cart(self, client, user_headers):
        response = checkout(client, user_headers)

        assert response.status_code == 400
        assert response.json() == {"error": "ValidationError", "message": "Cart is empty"}

    def test_user_without_checkout_permission(self, client, make_token, bearer):
        fill_cart(client)

        response = checkout(client, bearer(make_token(canCheckout="false")))

        assert response.status_code == 403
        assert len(client.get("/api/cart").json()) == 2

    def test_empty_cart_is_checked_before_permission(self, client, make_token, bearer):
        response = checkout(client, bearer(make_token(canCheckout=False)))
        assert response.status_code == 400

    @pytest.mark.parametrize("missing", ["shippingAddress", "paymentMethod"])
    def test_missing_fields(self, client, user_headers, missing):
        fill_cart(client)

        response = checkout(client, user_headers, **{missing: None})

        assert response.status_code == 400
        assert response.json()["message"] == "Missing required fields"

    def test_unsupported_payment_method(self, client, user_headers):
        fill_cart(client)

        response = checkout(client, user_headers, paymentMethod="bitcoin")

        assert response.status_code == 400
        assert response.json()["allowed"] == ["credit-card", "paypal", "bank-transfer"]


class TestNotificationIsolation:
    def test_unreachable_notification_service(self, client, user_headers, network, caplog):
        async def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        network.notification_handler = refuse
        fill_cart(client)

        with caplog.at_level(logging.ERROR):
            response = checkout(client, user_headers)

        assert response.status_code == 200
        assert client.get("/api/cart").json() == []
        assert len(client.get("/api/orders", headers=user_headers).json()) == 1
        assert "Failed to send notification" in caplog.text

    def test_notification_timeout(self, client, user_headers, network):
        async def hang(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        network.notification_handler = hang
        fill_cart(client)

        response = checkout(client, user_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_notification_rejected(self, client, user_headers, network):
        async def forbid(request):
            return httpx.Response(403, json={"error": "Forbidden"})

        network.notification_handler = forbid
        fill_cart(client)

        assert checkout(client, user_headers).status_code == 200

    def test_token_endpoint_down(self, client, user_headers, network):
        network.token_status = 500
        network.token_payload = {"error": "server_error"}
        fill_cart(client)

        response = checkout(client, user_headers)

        assert response.status_code == 200
        assert network.notifications == []

    def test_malformed_token_response(self, client, user_headers, network):
        network.token_payload = {"access_token": "t", "expires_in": "soon"}
        fill_cart(client)

        response = checkout(client, user_headers)

        assert response.status_code == 200
        assert client.get("/api/cart").json() == []
        assert len(client.get("/api/orders", headers=user_headers).json()) == 1
        assert network.notifications == []

    def test_unexpected_error_is_logged_not_raised(self, client, user_headers, network, caplog):
        async def explode(request):
            raise RuntimeError("boom")

        network.notification_handler = explode
        fill_cart(client)

        with caplog.at_level(logging.ERROR):
            response = checkout(client, user_headers)

        assert response.status_code == 200
        assert len(client.get("/api/orders", headers=user_headers).json()) == 1
        assert "Failed to send notification" in caplog.text


class TestPersistenceFailure:
    def test_database_error_returns_500_and_keeps_cart(self, client, user_headers, monkeypatch, network):
        async def broken_place_order(*args, **kwargs):
            raise OperationalError("INSERT INTO orders", {}, Exception("connection lost"))

        monkeypatch.setattr(commands, "place_order", broken_place_order)
        fill_cart(client)

        response = checkout(client, user_headers)

        assert response.status_code == 500
        assert response.json() == {"error": "UpstreamFailure", "message": "Checkout failed"}
        assert len(client.get("/api/cart").json()) == 2
        assert network.notifications == []


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[int] = []

    async def send_order_notification(self, order, principal):
        self.sent.append(order["id"])
        return {}


@pytest.fixture
async def orchestrator(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'direct.db'}")
    await init_db(engine)
    yield CheckoutOrchestrator(
        sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
        CartStore(),
        RecordingNotifier(),
    )
    await engine.dispose()


class TestConcurrentCheckout:
    async def test_double_submit_places_one_order(self, orchestrator):
        orchestrator.carts.add("s1", {"id": 1, "name": "A", "price": 10.0}, 2)
        principal = principal_from_claims(CLAIM_SETS["user"])

        results = await asyncio.gather(
            orchestrator.execute("s1", principal, ADDRESS, "paypal"),
            orchestrator.execute("s1", principal, ADDRESS, "paypal"),
            return_exceptions=True,
        )

        placed = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, errors.ValidationError)]
        assert len(placed) == 1
        assert [e.message for e in rejected] == ["Cart is empty"]
        assert orchestrator.notifier.sent == [placed[0]["order"]["id"]]

    async def test_failed_save_puts_cart_back(self, orchestrator, monkeypatch):
        async def broken_place_order(*args, **kwargs):
            # another request adds to the same cart while the order is being saved
            orchestrator.carts.add("s1", {"id": 2, "name": "B", "price": 1.0}, 1)
            raise OperationalError("INSERT INTO orders", {}, Exception("connection lost"))

        monkeypatch.setattr(commands, "place_order", broken_place_order)
        orchestrator.carts.add("s1", {"id": 1, "name": "A", "price": 10.0}, 2)
        principal = principal_from_claims(CLAIM_SETS["user"])

        with pytest.raises(errors.UpstreamFailure):
            await orchestrator.execute("s1", principal, ADDRESS, "paypal")

        cart = orchestrator.carts.items("s1")
        assert [(line["productId"], line["quantity"]) for line in cart] == [(1, 2), (2, 1)]

class TestOrderAccess:
    def test_orders_require_token(self, client):
        assert client.get("/api/orders").status_code == 401

    def test_other_users_order_is_forbidden(self, client, user_headers, make_token, bearer):
        fill_cart(client)
        order_id = checkout(client, user_headers).json()["order"]["id"]

        other = bearer(make_token(sub="user-456", email="mallory@example.com"))
        response = client.get(f"/api/orders/{order_id}", headers=other)

        assert response.status_code == 403
        assert client.get("/api/orders", headers=other).json() == []

    def test_missing_order(self, client, user_headers):
        assert client.get("/api/orders/999", headers=user_headers).status_code == 404
