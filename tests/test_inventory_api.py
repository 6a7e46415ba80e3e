"""Inventory service: reservation lifecycle, availability checks and fault switches."""

import pytest
from fastapi.testclient import TestClient

from services.inventory.app import commands
from services.inventory.app.aggregate import StockLedger
from services.inventory.app.main import create_app
from services.shared import errors


@pytest.fixture
def client(settings, transport, make_token, bearer):
    with TestClient(create_app(settings, transport=transport)) as c:
        c.headers.update(bearer(make_token("service")))
        yield c


def stock(client) -> dict[int, int]:
    response = client.get("/api/inventory/stock")
    assert response.status_code == 200
    return {p["productId"]: p["stock"] for p in response.json()["products"]}


class TestReserveAndRelease:
    def test_reserve_then_release_restores_stock(self, client):
        before = stock(client)

        reserved = client.post(
            "/api/inventory/reserve",
            json={"orderId": "ORD-1", "items": [{"productId": 1, "quantity": 2}, {"productId": 2, "quantity": 3}]},
        )
        assert reserved.status_code == 200
        body = reserved.json()
        assert body["success"] is True
        assert body["orderId"] == "ORD-1"
        assert [i["remainingStock"] for i in body["items"]] == [before[1] - 2, before[2] - 3]

        during = stock(client)
        assert during[1] == before[1] - 2
        assert during[2] == before[2] - 3

        released = client.post("/api/inventory/release", json={"reservationId": body["reservationId"]})
        assert released.status_code == 200
        assert released.json()["releasedItems"] == [
            {"productId": 1, "quantity": 2, "newStock": before[1]},
            {"productId": 2, "quantity": 3, "newStock": before[2]},
        ]
        assert stock(client) == before

    def test_second_release_is_not_found(self, client):
        reservation_id = client.post(
            "/api/inventory/reserve",
            json={"orderId": 7, "items": [{"productId": 3, "quantity": 1}]},
        ).json()["reservationId"]

        assert client.post("/api/inventory/release", json={"reservationId": reservation_id}).status_code == 200
        second = client.post("/api/inventory/release", json={"reservationId": reservation_id})

        assert second.status_code == 404
        assert second.json()["error"] == "NotFound"
        assert second.json()["reservationId"] == reservation_id

    def test_reservation_ids_are_unique_per_order(self, client):
        payload = {"orderId": "ORD-DUP", "items": [{"productId": 6, "quantity": 1}]}

        first = client.post("/api/inventory/reserve", json=payload).json()["reservationId"]
        second = client.post("/api/inventory/reserve", json=payload).json()["reservationId"]

        assert first != second
        assert first.startswith("res-") and "-ORD-DUP-" in first

    def test_active_reservations_are_counted(self, client):
        client.post("/api/inventory/reserve", json={"orderId": "A", "items": [{"productId": 1, "quantity": 1}]})

        assert client.get("/api/inventory/stock").json()["activeReservations"] == 1


class TestInsufficientStock:
    def test_whole_batch_fails_and_stock_is_unchanged(self, client):
        before = stock(client)

        response = client.post(
            "/api/inventory/reserve",
            json={
                "orderId": "ORD-BIG",
                "items": [
                    {"productId": 1, "quantity": 1},
                    {"productId": 2, "quantity": 10_000},
                    {"productId": 999, "quantity": 1},
                ],
            },
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "InsufficientStock"
        assert body["success"] is False
        assert body["unavailableItems"] == [
            {"productId": 2, "requestedQuantity": 10_000, "availableStock": before[2]},
            {"productId": 999, "requestedQuantity": 1, "availableStock": 0},
        ]
        assert stock(client) == before

    def test_duplicate_lines_are_summed(self, client):
        # product 5 has 30 in stock
        response = client.post(
            "/api/inventory/reserve",
            json={"orderId": "ORD-SPLIT", "items": [{"productId": 5, "quantity": 20}, {"productId": 5, "quantity": 20}]},
        )

        assert response.status_code == 409
        assert response.json()["unavailableItems"][0]["requestedQuantity"] == 40
        assert stock(client)[5] == 30


class TestValidation:
    def test_zero_quantity(self, client):
        response = client.post(
            "/api/inventory/reserve",
            json={"orderId": "X", "items": [{"productId": 1, "quantity": 0}]},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_empty_items(self, client):
        response = client.post("/api/inventory/reserve", json={"orderId": "X", "items": []})
        assert response.status_code == 400

    def test_missing_order_id(self, client):
        response = client.post("/api/inventory/reserve", json={"items": [{"productId": 1, "quantity": 1}]})
        assert response.status_code == 400

    def test_empty_order_id(self, client):
        response = client.post(
            "/api/inventory/reserve", json={"orderId": "", "items": [{"productId": 1, "quantity": 1}]}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_requires_token(self, client):
        client.headers.pop("Authorization")
        response = client.post("/api/inventory/check", json={"items": []})

        assert response.status_code == 401


class TestCheck:
    def test_reports_each_item_without_reserving(self, client):
        before = stock(client)

        response = client.post(
            "/api/inventory/check",
            json={"items": [{"productId": 4, "quantity": 5}, {"productId": 5, "quantity": 31}]},
        )

        body = response.json()
        assert body["available"] is False
        assert [i["available"] for i in body["items"]] == [True, False]
        assert body["items"][0]["productName"] == "AirPods Pro"
        assert stock(client) == before

    def test_out_of_stock_simulation_is_one_shot(self, client):
        items = {"items": [{"productId": 1, "quantity": 1}]}
        assert client.post("/config/simulate-out-of-stock").json()["success"] is True

        simulated = client.post("/api/inventory/check", json=items).json()
        assert simulated["available"] is False
        assert simulated["items"][0]["reason"] == "Out of stock (simulated)"

        assert client.post("/api/inventory/check", json=items).json()["available"] is True

    def test_slow_simulation_still_answers(self, client):
        client.post("/config/simulate-slow")

        response = client.post("/api/inventory/check", json={"items": [{"productId": 1, "quantity": 1}]})

        assert response.status_code == 200
        assert response.json()["available"] is True

    def test_reset_clears_switches(self, client):
        client.post("/config/simulate-out-of-stock")
        client.post("/config/reset")

        response = client.post("/api/inventory/check", json={"items": [{"productId": 1, "quantity": 1}]})
        assert response.json()["available"] is True


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "inventory"}


class TestCommandsDirectly:
    def test_release_unknown_reservation(self):
        with pytest.raises(errors.NotFound):
            commands.release_inventory(StockLedger(), "res-unknown")

    def test_reserve_against_custom_seed(self):
        ledger = StockLedger({42: ("Widget", 3)})

        result = commands.reserve_inventory(ledger, "o-1", [(42, 3)])

        assert ledger.stock_of(42) == 0
        assert result["items"][0]["productName"] == "Widget"
        with pytest.raises(errors.InsufficientStock):
            commands.reserve_inventory(ledger, "o-2", [(42, 1)])
