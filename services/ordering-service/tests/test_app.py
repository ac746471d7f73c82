from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import FailingRefundPayments, place_order
from ordering_service.app import create_app
from ordering_service.mailer import LogMailer
from ordering_service.payment_client import MockPaymentClient

CHECKOUT = {
    "customer": {"name": "Ana", "email": "ana@example.com", "phone": "513-555-0100"},
    "cart": [
        {"menu_item_id": "teriyaki", "quantity": 2, "variant_name": "salmon"},
        {"menu_item_id": "gyoza", "quantity": 1},
    ],
    "special_requests": "no onions",
}


@pytest.fixture()
def client(connection_factory, payments, mailer, monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.delenv("RESTAURANT_EMAIL", raising=False)
    app = create_app(connection_factory=connection_factory, payment_client=payments, mailer=mailer)
    return TestClient(app)


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_menu_and_variants(client):
    menu = client.get("/menu").json()
    assert [category["id"] for category in menu["categories"]] == ["cat-rice", "cat-noodles", "cat-sides"]
    assert len(menu["items"]) == 8
    assert all(item["orderable"] for item in menu["items"])

    variants = client.get("/menu/items/udon/variants").json()
    assert [v["display_name"] for v in variants] == [
        "Udon (Tofu)",
        "Udon (Chicken)",
        "Udon (Beef)",
        "Udon (Shrimp Tempura)",
    ]
    assert client.get("/menu/items/sushi/variants").status_code == 404


def test_stock_updates(client):
    response = client.put("/menu/items/gyoza/stock", json={"status": "out_today"})
    assert response.status_code == 200
    assert response.json()["orderable"] is False

    response = client.put("/menu/items/udon/variants/beef/stock", json={"status": "low_stock"})
    assert response.json()["orderable"] is True

    assert client.put("/menu/items/gyoza/stock", json={"status": "out_until"}).status_code == 400
    assert client.put("/menu/items/gyoza/stock", json={"status": "gone"}).status_code == 422

    assert client.post("/menu/stock/reset").json() == {"reset": 1}


def test_checkout_and_verify(client, payments, mailer):
    started = client.post("/checkout", json=CHECKOUT)
    assert started.status_code == 201
    session_id = started.json()["session_id"]
    assert started.json()["total_cents"] == 3000

    verify = {"session_id": session_id, "cart": CHECKOUT["cart"]}
    assert client.post("/checkout/verify", json=verify).status_code == 402

    payments.mark_paid(session_id)
    response = client.post("/checkout/verify", json=verify)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["duplicate"] is False
    assert body["order"]["total_cents"] == 3000
    assert [item["display_name"] for item in body["order"]["items"]] == ["Teriyaki Salmon", "Gyoza"]
    # outside production only the restaurant receives the copy
    assert mailer.sent[-1]["to"] == ["orders@example.com"]

    again = client.post("/checkout/verify", json=verify).json()
    assert again["duplicate"] is True
    assert again["order"]["id"] == body["order"]["id"]


def test_checkout_validation_errors(client):
    bad_email = dict(CHECKOUT, customer={"name": "Ana", "email": "ana@"})
    assert client.post("/checkout", json=bad_email).status_code == 400

    empty_cart = dict(CHECKOUT, cart=[])
    assert client.post("/checkout", json=empty_cart).status_code == 400


def test_orders_listing_and_lookup(client, order_repo):
    order = place_order(order_repo, ("pho", 1000, 1, "chicken"))

    assert [o["id"] for o in client.get("/orders").json()] == [order.id]
    assert client.get("/orders", params={"status": "cancelled"}).json() == []
    assert client.get(f"/orders/{order.id}").json()["items"][0]["display_name"] == "Pho (Chicken)"
    assert client.get("/orders/missing").status_code == 404


def test_swap_item_requests_additional_payment(client, order_repo, payments):
    order = place_order(order_repo, ("teriyaki", 1000, 1, "chicken"), ("gyoza", 600, 1, None))

    response = client.post(
        f"/orders/{order.id}/items/{order.items[0].id}/swap",
        json={"new_menu_item_id": "katsu-don", "variant_name": "don_pork"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["price_difference"] == 200
    assert body["payment_url"] == payments.charges[0].checkout_url
    assert body["order"]["total_cents"] == 1800
    assert body["substitution_type"] == "item_swap_payment_required"


def test_swap_variant_and_cancel_item(client, order_repo):
    order = place_order(order_repo, ("udon", 1000, 1, "tofu"), ("gyoza", 600, 1, None))

    swapped = client.post(
        f"/orders/{order.id}/items/{order.items[0].id}/swap-variant",
        json={"variant_name": "chicken", "new_price_cents": 1100},
    ).json()
    assert swapped["order"]["items"][0]["display_name"] == "Udon (Chicken)"

    cancelled = client.post(f"/orders/{order.id}/items/{order.items[1].id}/cancel").json()
    assert cancelled["refund_amount_cents"] == 600
    assert cancelled["order"]["total_cents"] == 1100


def test_cancelled_order_conflicts(client, order_repo):
    order = place_order(order_repo, ("pho", 1000, 1, "chicken"))

    assert client.post(f"/orders/{order.id}/cancel").json()["order"]["status"] == "cancelled"

    response = client.post(
        f"/orders/{order.id}/items/{order.items[0].id}/swap", json={"new_menu_item_id": "udon"}
    )
    assert response.status_code == 409


def test_status_update(client, order_repo):
    order = place_order(order_repo, ("pho", 1000, 1, "chicken"))

    response = client.post(f"/orders/{order.id}/status", json={"status": "ready_for_pickup"})

    assert response.json()["order"]["status"] == "ready_for_pickup"
    assert client.post(f"/orders/{order.id}/status", json={"status": "cancelled"}).status_code == 422


def test_refund_failure_maps_to_bad_gateway(connection_factory, order_repo):
    app = create_app(
        connection_factory=connection_factory, payment_client=FailingRefundPayments(), mailer=LogMailer()
    )
    client = TestClient(app)
    order = place_order(order_repo, ("pho", 1000, 1, "chicken"), ("gyoza", 600, 1, None))

    response = client.post(f"/orders/{order.id}/items/{order.items[1].id}/cancel")

    assert response.status_code == 502
    assert client.get(f"/orders/{order.id}").json()["total_cents"] == 1600


def test_workflow_over_http(client, order_repo, menu_repo):
    order = place_order(order_repo, ("udon", 1200, 1, "beef"), ("gyoza", 600, 1, None))

    started = client.post("/workflows", json={"order_id": order.id, "order_item_id": order.items[0].id})
    assert started.status_code == 201
    workflow_id = started.json()["id"]
    assert started.json()["step"] == "confirm"

    # not allowed before the out-of-stock report
    assert client.post(f"/workflows/{workflow_id}/mark_out_of_stock", json={"duration": "out_today"}).status_code == 409

    assert client.post(f"/workflows/{workflow_id}/report_out_of_stock").json()["step"] == "out_of_stock_choice"
    client.post(f"/workflows/{workflow_id}/choose_out_of_stock_scope", json={"scope": "variant"})
    state = client.post(f"/workflows/{workflow_id}/mark_out_of_stock", json={"duration": "out_today"}).json()
    assert state["step"] == "replacement_options"
    assert state["replacement_type"] == "variant"

    candidates = client.get(f"/workflows/{workflow_id}/candidates").json()
    assert [v["variant_name"] for v in candidates["variants"]] == ["tofu", "chicken", "shrimp_tempura"]

    final = client.post(f"/workflows/{workflow_id}/select_replacement", json={"variant_name": "tofu"}).json()
    assert final["step"] == "closed"
    assert final["result"]["refund_amount_cents"] == 200
    assert menu_repo.require_variant("udon", "beef").stock_status == "out_today"

    assert client.get(f"/workflows/{workflow_id}").status_code == 404


def test_workflow_close_and_unknown_action(client, order_repo):
    order = place_order(order_repo, ("pho", 1000, 1, "chicken"))
    workflow_id = client.post(
        "/workflows", json={"order_id": order.id, "order_item_id": order.items[0].id}
    ).json()["id"]

    assert client.post(f"/workflows/{workflow_id}/explode").status_code == 409
    assert client.delete(f"/workflows/{workflow_id}").status_code == 204
    assert client.delete(f"/workflows/{workflow_id}").status_code == 404


def test_dispatch_endpoint(client):
    assert client.post("/notifications/dispatch").json() == {"delivered": 0}


def test_mock_payment_mode_pays_immediately(connection_factory, monkeypatch):
    monkeypatch.setenv("PAYMENT_MODE", "mock")
    client = TestClient(create_app(connection_factory=connection_factory, mailer=LogMailer()))

    session_id = client.post("/checkout", json=CHECKOUT).json()["session_id"]
    response = client.post("/checkout/verify", json={"session_id": session_id, "cart": CHECKOUT["cart"]})

    assert response.status_code == 200
    assert isinstance(client.app.state.payment_client, MockPaymentClient)
