import pytest


@pytest.fixture
def add(client, customer_headers):
    def _add(product, quantity=1, variant_id=None):
        body = {"product_id": str(product["_id"]), "quantity": quantity}
        if variant_id:
            body["variant_id"] = str(variant_id)
        return client.post("/api/cart/add", json=body, headers=customer_headers)
    return _add


@pytest.fixture
def coupon(client, admin_headers):
    response = client.post("/api/cms", headers=admin_headers, json={
        "type": "promotion",
        "title": "Spring sale",
        "content": "Ten percent off everything",
        "status": "published",
        "promotion": {"code": "spring10", "discount_type": "percentage", "discount_value": 10},
    })
    assert response.status_code == 201
    return response.json()["data"]


def test_adding_same_line_twice_merges_quantity(client, product, add, customer_headers):
    add(product, 2)
    response = add(product, 3)

    assert response.status_code == 200
    cart = response.json()["data"]
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 5
    assert cart["summary"]["subtotal"] == 250.0
    assert cart["summary"]["shipping"] == 0.0
    assert client.get("/api/cart/count", headers=customer_headers).json()["count"] == 5


def test_cannot_add_more_than_in_stock(client, db, product, add):
    add(product, 8)
    response = add(product, 3)

    assert response.status_code == 400
    assert response.json()["available"] == 10
    assert response.json()["requested"] == 11
    assert db["user"].find_one({"email": "ada@example.com"})["cart"][0]["quantity"] == 8


def test_variant_lines_are_separate(client, make_product, add):
    shirt = make_product(variants=[
        {"size": "S", "color": "White", "sku": "W-S", "stock": 2},
        {"size": "M", "color": "White", "sku": "W-M", "stock": 2, "price": 55.0},
    ])
    add(shirt, 1, shirt["variants"][0]["_id"])
    cart = add(shirt, 1, shirt["variants"][1]["_id"]).json()["data"]

    assert [line["price"] for line in cart["items"]] == [50.0, 55.0]
    assert cart["items"][1]["variant"] == {"size": "M", "color": "White"}


def test_update_and_remove_items(client, product, add, customer_headers):
    item_id = add(product, 1).json()["data"]["items"][0]["id"]

    updated = client.put(f"/api/cart/items/{item_id}", json={"quantity": 4}, headers=customer_headers)
    assert updated.json()["data"]["items"][0]["quantity"] == 4

    too_many = client.put(f"/api/cart/items/{item_id}", json={"quantity": 40}, headers=customer_headers)
    assert too_many.status_code == 400

    removed = client.delete(f"/api/cart/items/{item_id}", headers=customer_headers)
    assert removed.json()["data"]["items"] == []
    again = client.delete(f"/api/cart/items/{item_id}", headers=customer_headers)
    assert again.status_code == 404


def test_clear_cart(client, product, add, customer_headers):
    add(product, 2)
    assert client.delete("/api/cart/clear", headers=customer_headers).status_code == 200
    assert client.get("/api/cart/count", headers=customer_headers).json()["count"] == 0


def test_inactive_products_drop_out_of_the_cart(client, db, product, add, customer_headers):
    add(product, 1)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"status": "inactive"}})

    cart = client.get("/api/cart", headers=customer_headers).json()["data"]
    assert cart["items"] == []
    assert db["user"].find_one({"email": "ada@example.com"})["cart"] == []


def test_apply_coupon_prices_the_cart(client, product, add, coupon, customer_headers):
    add(product, 1)

    response = client.post("/api/cart/apply-coupon", json={"code": "SPRING10"}, headers=customer_headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["coupon"]["code"] == "SPRING10"
    assert data["cart_total"]["discount_amount"] == 5.0
    assert data["cart_total"]["final_amount"] == 55.0


def test_unknown_coupon(client, product, add, customer_headers):
    add(product, 1)
    response = client.post("/api/cart/apply-coupon", json={"code": "NOPE"}, headers=customer_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid or expired coupon code"


def test_coupon_on_empty_cart(client, coupon, customer_headers):
    response = client.post("/api/cart/apply-coupon", json={"code": "SPRING10"}, headers=customer_headers)
    assert response.status_code == 400


def test_validate_flags_stock_shortfall(client, db, product, add, customer_headers):
    add(product, 6)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {
        "inventory.quantity": 4, "inventory.available_quantity": 4,
    }})

    data = client.post("/api/cart/validate", headers=customer_headers).json()["data"]
    assert data["valid"] is False
    assert data["issues"][0]["issue"] == "Insufficient stock"
    assert data["issues"][0]["available_stock"] == 4


def test_cart_requires_login(client):
    assert client.get("/api/cart").status_code == 401
