from tests.conftest import ADDRESS, PASSWORD, auth


def test_profile_update(client, customer_headers):
    response = client.put("/api/users/profile", json={"phone": "555-0100"}, headers=customer_headers)
    assert response.status_code == 200
    assert response.json()["data"]["phone"] == "555-0100"

    empty = client.put("/api/users/profile", json={}, headers=customer_headers)
    assert empty.status_code == 400


def test_first_address_becomes_default(client, customer_headers):
    first = client.post("/api/users/addresses", json=ADDRESS, headers=customer_headers).json()["data"]
    assert first[0]["is_default"] is True

    both = client.post("/api/users/addresses", json={**ADDRESS, "label": "work", "is_default": True},
                       headers=customer_headers).json()["data"]
    assert [a["is_default"] for a in both] == [False, True]

    remaining = client.delete(f"/api/users/addresses/{both[1]['id']}", headers=customer_headers).json()["data"]
    assert len(remaining) == 1
    assert remaining[0]["is_default"] is True


def test_wishlist_move_to_cart(client, product, customer_headers):
    assert client.post(f"/api/users/wishlist/{product['_id']}", headers=customer_headers).status_code == 200
    client.post(f"/api/users/wishlist/{product['_id']}", headers=customer_headers)
    assert client.get("/api/users/wishlist/count", headers=customer_headers).json()["count"] == 1

    moved = client.post("/api/users/wishlist/move-to-cart", json={"product_id": str(product["_id"]), "quantity": 2},
                        headers=customer_headers)
    assert moved.status_code == 200
    assert client.get("/api/users/wishlist/count", headers=customer_headers).json()["count"] == 0
    assert client.get("/api/cart/count", headers=customer_headers).json()["count"] == 2


def test_deactivated_accounts_lose_access(client, customer, customer_headers):
    wrong = client.request("DELETE", "/api/users/account", json={"password": "nope"}, headers=customer_headers)
    assert wrong.status_code == 400

    ok = client.request("DELETE", "/api/users/account", json={"password": PASSWORD}, headers=customer_headers)
    assert ok.status_code == 200
    assert client.get("/api/users/profile", headers=customer_headers).status_code == 401


def test_admin_user_management(client, admin, customer, admin_headers):
    users = client.get("/api/users/admin/all", params={"role": "customer"}, headers=admin_headers).json()
    assert [u["email"] for u in users["data"]] == [customer["email"]]

    promoted = client.put(f"/api/users/admin/{customer['_id']}/role", json={"role": "admin"},
                          headers=admin_headers)
    assert promoted.json()["data"]["role"] == "admin"

    own = client.put(f"/api/users/admin/{admin['_id']}/status", json={"is_active": False}, headers=admin_headers)
    assert own.status_code == 400


def test_dashboard_counts(client, product, place_order, admin_headers):
    place_order(product, quantity=2)

    data = client.get("/api/admin/dashboard", headers=admin_headers).json()["data"]
    assert data["overview"]["total_orders"] == 1
    assert data["overview"]["total_products"] == 1
    assert data["order_status"] == {"pending": 1}
    assert len(data["recent_orders"]) == 1


def test_notifications_are_derived_from_state(client, make_product, place_order, admin_headers):
    low = make_product(inventory={"quantity": 2, "reorder_point": 5})
    place_order(low)

    notes = client.get("/api/admin/notifications", headers=admin_headers).json()["data"]
    kinds = {n["type"]: n["count"] for n in notes}
    assert kinds == {"stock": 1, "order": 1}


def test_settings_are_versioned_with_backups(client, db, admin_headers):
    url = "/api/admin/settings/shipping"
    first = client.put(url, json={"settings": {"free_threshold": 100}}, headers=admin_headers).json()["data"]
    assert first["version"] == 1

    second = client.put(url, json={"settings": {"flat_rate": 10}}, headers=admin_headers).json()["data"]
    assert second["version"] == 2
    assert second["settings"] == {"free_threshold": 100, "flat_rate": 10}
    assert db["settings"].count_documents({"is_active": False}) == 1

    assert client.get(url, headers=admin_headers).json()["data"] == {"free_threshold": 100, "flat_rate": 10}
    assert client.put("/api/admin/settings/unknown", json={"settings": {"a": 1}},
                      headers=admin_headers).status_code == 422


def test_media_library(client, product, admin_headers):
    created = client.post("/api/media", headers=admin_headers, json={
        "file_name": "oxford-front.JPG", "mime_type": "image/jpeg", "file_size": 2048,
        "url": "https://cdn.example.com/oxford-front.jpg", "tags": [" Shirts "],
    }).json()["data"]
    assert created["file_extension"] == "jpg"
    assert created["tags"] == ["shirts"]
    assert created["is_in_use"] is False

    url = f"/api/media/{created['id']}/usage"
    used = client.post(url, json={"entity_type": "product", "entity_id": str(product["_id"])},
                       headers=admin_headers).json()["data"]
    assert used["is_in_use"] is True

    found = client.get("/api/media/search", params={"q": "oxford"}, headers=admin_headers).json()["data"]
    assert [m["id"] for m in found] == [created["id"]]

    client.delete(f"/api/media/{created['id']}", headers=admin_headers)
    assert client.get("/api/media", headers=admin_headers).json()["data"] == []


def test_admin_routes_reject_customers(client, db, customer):
    headers = auth(customer)
    for url in ("/api/admin/dashboard", "/api/admin/notifications", "/api/media"):
        assert client.get(url, headers=headers).status_code == 403
