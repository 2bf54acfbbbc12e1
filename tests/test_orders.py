import pytest

from config import TAX_RATE
from models import product as product_model
from tests.conftest import ADDRESS, auth, make_user


def _stock(db, product):
    return db["product"].find_one({"_id": product["_id"]})["inventory"]


def _set_status(client, order_id, status, headers):
    return client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers)


def test_order_total_adds_up(client, product, place_order):
    response = place_order(product, quantity=2)

    assert response.status_code == 201
    order = response.json()["data"]
    assert order["order_number"] == "ORD000001"
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["subtotal"] == 100.0
    assert order["tax"]["amount"] == pytest.approx(100.0 * TAX_RATE)
    assert order["shipping"]["cost"] == 10.0
    assert order["total"] == pytest.approx(
        order["subtotal"] + order["tax"]["amount"] + order["shipping"]["cost"] - order["discount"]["amount"]
    )
    assert order["items"][0]["total_price"] == 100.0
    assert order["formatted_order_number"] == "#ORD000001"


def test_free_standard_shipping_over_threshold(client, make_product, place_order):
    response = place_order(make_product(price=120.0))
    assert response.json()["data"]["shipping"]["cost"] == 0.0


def test_order_reserves_stock(client, db, product, place_order):
    place_order(product, quantity=3)

    stock = _stock(db, product)
    assert stock["quantity"] == 10
    assert stock["reserved_quantity"] == 3
    assert stock["available_quantity"] == 7


def test_order_for_too_many_units_is_rejected(client, db, product, place_order):
    response = place_order(product, quantity=11)

    assert response.status_code == 400
    body = response.json()
    assert body["available"] == 10
    assert body["requested"] == 11
    assert db["order"].count_documents({}) == 0
    assert _stock(db, product)["reserved_quantity"] == 0


def test_failed_line_releases_earlier_reservations(client, db, make_product, customer_headers):
    plenty, scarce = make_product(), make_product(inventory={"quantity": 1})
    response = client.post("/api/orders", headers=customer_headers, json={
        "items": [{"product_id": str(plenty["_id"]), "quantity": 2},
                  {"product_id": str(scarce["_id"]), "quantity": 1},
                  {"product_id": str(scarce["_id"]), "quantity": 1}],
        "shipping_address": ADDRESS,
    })

    assert response.status_code == 400
    assert _stock(db, plenty)["reserved_quantity"] == 0
    assert _stock(db, scarce)["reserved_quantity"] == 0


def test_variant_orders_use_variant_price(client, db, make_product, place_order):
    shirt = make_product(variants=[{"size": "M", "color": "Red", "sku": "RED-M", "stock": 3, "price": 42.0}])
    variant_id = shirt["variants"][0]["_id"]

    response = place_order(shirt, quantity=2, variant_id=variant_id)
    assert response.status_code == 201
    item = response.json()["data"]["items"][0]
    assert item["price"] == 42.0
    assert item["variant"]["sku"] == "RED-M"
    stored = db["product"].find_one({"_id": shirt["_id"]})
    assert product_model.find_variant(stored, variant_id)["available_stock"] == 1


def test_customer_cancel_releases_stock(client, db, product, place_order, customer_headers):
    order = place_order(product, quantity=4).json()["data"]

    response = client.put(f"/api/orders/{order['id']}/cancel", json={"reason": "Changed my mind"},
                          headers=customer_headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"
    stock = _stock(db, product)
    assert stock["reserved_quantity"] == 0
    assert stock["available_quantity"] == 10

    again = client.put(f"/api/orders/{order['id']}/cancel", json={}, headers=customer_headers)
    assert again.status_code == 400


def test_shipping_commits_stock(client, db, product, place_order, admin_headers):
    order = place_order(product, quantity=2).json()["data"]

    assert _set_status(client, order["id"], "confirmed", admin_headers).status_code == 200
    response = client.put(f"/api/orders/{order['id']}/status", headers=admin_headers,
                          json={"status": "shipped", "tracking_number": "1Z999", "carrier": "UPS"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["shipping"]["tracking_number"] == "1Z999"
    assert data["shipped_at"] is not None
    assert [h["status"] for h in data["status_history"]] == ["pending", "confirmed", "shipped"]

    stock = _stock(db, product)
    assert stock["quantity"] == 8
    assert stock["reserved_quantity"] == 0
    assert stock["available_quantity"] == 8
    assert db["product"].find_one({"_id": product["_id"]})["sales_count"] == 2


def test_cancelling_after_payment_restocks(client, db, product, place_order, admin_headers, customer_headers):
    order = _paid_order(client, product, place_order, customer_headers)
    assert _stock(db, product)["quantity"] == 8

    response = _set_status(client, order["id"], "cancelled", admin_headers)
    assert response.status_code == 200
    stock = _stock(db, product)
    assert stock["quantity"] == 10
    assert stock["reserved_quantity"] == 0
    assert stock["available_quantity"] == 10


def test_invalid_transition_is_a_conflict(client, product, place_order, admin_headers):
    order = place_order(product).json()["data"]

    response = _set_status(client, order["id"], "delivered", admin_headers)
    assert response.status_code == 409
    assert response.json()["message"] == "Cannot move order from 'pending' to 'delivered'"


def test_customers_only_see_their_own_orders(client, db, product, place_order, admin_headers):
    order = place_order(product).json()["data"]
    other = auth(make_user(db, "other@example.com"))

    assert client.get(f"/api/orders/{order['id']}", headers=other).status_code == 403
    assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200
    assert client.get("/api/orders/my-orders", headers=other).json()["data"] == []


def test_status_update_requires_admin(client, product, place_order, customer_headers):
    order = place_order(product).json()["data"]
    assert _set_status(client, order["id"], "confirmed", customer_headers).status_code == 403


def test_unknown_order_id(client, admin_headers):
    assert client.get("/api/orders/not-an-id", headers=admin_headers).status_code == 400
    assert client.get("/api/orders/5f8f8c44b54764421b7156c9", headers=admin_headers).status_code == 404


def _delivered_order(client, product, place_order, admin_headers, quantity=2):
    order = place_order(product, quantity=quantity).json()["data"]
    for status in ("confirmed", "shipped", "delivered"):
        assert _set_status(client, order["id"], status, admin_headers).status_code == 200
    return order


def test_return_flow_restocks_on_approval(client, db, product, place_order, admin_headers, customer_headers):
    order = _delivered_order(client, product, place_order, admin_headers)
    base = f"/api/order-management/orders/{order['id']}/returns"

    too_many = client.post(base, headers=customer_headers, json={
        "items": [{"product_id": str(product["_id"]), "quantity": 3}], "return_reason": "wrong_size",
    })
    assert too_many.status_code == 400

    created = client.post(base, headers=customer_headers, json={
        "items": [{"product_id": str(product["_id"]), "quantity": 1}], "return_reason": "wrong_size",
    })
    assert created.status_code == 201
    entry = created.json()["data"]
    assert entry["status"] == "requested"
    assert entry["return_id"].startswith("RET")

    skipped = client.put(f"{base}/{entry['id']}/status", json={"status": "completed"}, headers=admin_headers)
    assert skipped.status_code == 409

    approved = client.put(f"{base}/{entry['return_id']}/status", json={"status": "approved"},
                          headers=admin_headers)
    assert approved.status_code == 200
    assert approved.json()["data"]["approved_at"] is not None
    assert _stock(db, product)["quantity"] == 9

    detail = client.get(f"/api/order-management/orders/{order['id']}", headers=admin_headers).json()["data"]
    assert detail["return_stats"]["returns"]["approved"] == 1


def test_returns_need_a_shipped_order(client, product, place_order, customer_headers):
    order = place_order(product).json()["data"]
    response = client.post(f"/api/order-management/orders/{order['id']}/returns", headers=customer_headers, json={
        "items": [{"product_id": str(product["_id"]), "quantity": 1}], "return_reason": "defective",
    })
    assert response.status_code == 400


def _paid_order(client, product, place_order, customer_headers):
    order = place_order(product, quantity=2).json()["data"]
    intent = client.post("/api/payments/create-payment-intent", json={"order_id": order["id"]},
                         headers=customer_headers).json()["data"]
    client.post("/api/payments/confirm-payment", json={"payment_intent_id": intent["payment_intent_id"]},
                headers=customer_headers)
    return order


def test_refund_lifecycle(client, db, product, place_order, admin_headers, customer_headers):
    order = _paid_order(client, product, place_order, customer_headers)
    base = f"/api/order-management/orders/{order['id']}/refunds"

    too_much = client.post(base, json={"amount": order["total"] + 1, "reason": "defective_product"},
                           headers=admin_headers)
    assert too_much.status_code == 400

    refund = client.post(base, json={"amount": 20.0, "reason": "defective_product"},
                         headers=admin_headers).json()["data"]
    assert refund["status"] == "pending"

    unapproved = client.post(f"{base}/{refund['id']}/process", headers=admin_headers)
    assert unapproved.status_code == 400

    client.put(f"{base}/{refund['id']}/status", json={"status": "approved"}, headers=admin_headers)
    processed = client.post(f"{base}/{refund['id']}/process", headers=admin_headers)
    assert processed.status_code == 200
    body = processed.json()
    assert body["success"] is True
    assert body["data"]["status"] == "completed"
    assert body["data"]["gateway_refund_id"].startswith("re_mock_")
    assert [h["status"] for h in body["data"]["status_history"]] == \
        ["pending", "approved", "processing", "completed"]
    assert db["order"].find_one()["payment_status"] == "partially_refunded"


def test_open_refunds_do_not_count_as_refunded(client, db, product, place_order, admin_headers,
                                               customer_headers):
    order = _paid_order(client, product, place_order, customer_headers)
    base = f"/api/order-management/orders/{order['id']}/refunds"

    client.post(base, json={"amount": order["total"] - 10.0, "reason": "defective_product"}, headers=admin_headers)
    small = client.post(base, json={"amount": 10.0, "reason": "defective_product"},
                        headers=admin_headers).json()["data"]
    client.put(f"{base}/{small['id']}/status", json={"status": "approved"}, headers=admin_headers)
    processed = client.post(f"{base}/{small['id']}/process", headers=admin_headers)

    assert processed.json()["data"]["status"] == "completed"
    assert db["order"].find_one()["payment_status"] == "partially_refunded"


def test_direct_refund_of_remaining_amount(client, db, product, place_order, admin_headers, customer_headers):
    order = _paid_order(client, product, place_order, customer_headers)

    response = client.post(f"/api/orders/{order['id']}/refund", json={"reason": "customer_request"},
                           headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["amount"] == pytest.approx(order["total"])
    assert db["order"].find_one()["payment_status"] == "refunded"

    nothing_left = client.post(f"/api/orders/{order['id']}/refund", json={"amount": 1.0},
                               headers=admin_headers)
    assert nothing_left.status_code == 400


def test_refund_requires_payment(client, product, place_order, admin_headers):
    order = place_order(product).json()["data"]
    response = client.post(f"/api/orders/{order['id']}/refund", json={}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Order has not been paid"


def test_reorder_puts_items_back_in_cart(client, product, place_order, customer_headers):
    order = place_order(product, quantity=2).json()["data"]

    response = client.post(f"/api/orders/{order['id']}/reorder", headers=customer_headers)
    assert response.status_code == 200
    assert response.json()["data"]["added"] == ["Oxford Shirt"]
    assert client.get("/api/cart/count", headers=customer_headers).json()["count"] == 2
