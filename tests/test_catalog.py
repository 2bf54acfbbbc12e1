import pytest

NEW_PRODUCT = {
    "name": "Linen Chinos",
    "description": "Relaxed linen trousers",
    "price": 65.0,
    "sku": "lin-chino-01",
    "category": "shirts",
    "brand": "Acme",
    "gender": "unisex",
    "tags": [" Summer ", "LINEN"],
    "status": "active",
    "inventory": {"quantity": 20},
}


@pytest.fixture
def created(client, category, admin_headers):
    response = client.post("/api/products", json=NEW_PRODUCT, headers=admin_headers)
    assert response.status_code == 201
    return response.json()["data"]


def test_create_product_normalizes_fields(created, db, category):
    assert created["sku"] == "LIN-CHINO-01"
    assert created["tags"] == ["summer", "linen"]
    assert created["seo"]["slug"] == "linen-chinos"
    assert created["inventory"]["available_quantity"] == 20
    assert created["is_available"] is True
    assert db["category"].find_one({"_id": category["_id"]})["product_count"] == 1
    assert db["auditlog"].count_documents({"action": "product_create"}) == 1


def test_duplicate_sku_is_rejected(client, created, admin_headers):
    response = client.post("/api/products", json={**NEW_PRODUCT, "name": "Other"}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Product with this SKU already exists"


def test_invalid_product_payload(client, category, admin_headers):
    response = client.post("/api/products", json={**NEW_PRODUCT, "gender": "robots"}, headers=admin_headers)
    assert response.status_code == 400
    assert [e["field"] for e in response.json()["errors"]] == ["gender"]


def test_products_are_admin_managed(client, category, customer_headers):
    assert client.post("/api/products", json=NEW_PRODUCT, headers=customer_headers).status_code == 403


def test_list_filters(client, make_product):
    make_product(name="Basic Tee", price=15.0)
    make_product(name="Silk Blouse", price=140.0, gender="women")
    make_product(name="Hidden Draft", price=30.0, status="draft")

    cheap = client.get("/api/products", params={"max_price": 20}).json()
    assert [p["name"] for p in cheap["data"]] == ["Basic Tee"]

    women = client.get("/api/products", params={"gender": "women"}).json()["data"]
    assert [p["name"] for p in women] == ["Silk Blouse"]

    searched = client.get("/api/products", params={"search": "blouse"}).json()
    assert searched["pagination"]["total"] == 1

    everything = client.get("/api/products").json()
    assert "Hidden Draft" not in [p["name"] for p in everything["data"]]


def test_get_by_slug_counts_views(client, db, created):
    response = client.get("/api/products/linen-chinos")
    assert response.status_code == 200
    assert response.json()["data"]["view_count"] == 1
    assert client.get(f"/api/products/{created['id']}").json()["data"]["view_count"] == 2


def test_drafts_are_hidden_from_the_public(client, make_product, admin_headers):
    draft = make_product(status="draft")
    assert client.get(f"/api/products/{draft['_id']}").status_code == 404
    assert client.get(f"/api/products/{draft['_id']}", headers=admin_headers).status_code == 200


def test_update_ignores_stock_fields(client, db, created, admin_headers):
    response = client.put(f"/api/products/{created['id']}", headers=admin_headers,
                          json={"name": "Linen Trousers", "inventory": {"quantity": 999}})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == "Linen Trousers"
    assert data["seo"]["slug"] == "linen-trousers"
    assert data["inventory"]["quantity"] == 20


def test_set_stock_through_product_route(client, created, admin_headers):
    response = client.put(f"/api/products/{created['id']}/stock", headers=admin_headers,
                          json={"quantity": 5, "operation": "set", "reason": "recount"})
    assert response.status_code == 200
    assert response.json()["data"]["inventory"]["quantity"] == 5
    assert response.json()["data"]["inventory"]["stock_history"][-1]["type"] == "out"


def test_variant_management(client, created, admin_headers):
    base = f"/api/products/{created['id']}/variants"
    variant = {"size": "m", "color": "Sand", "sku": "lin-m-sand", "stock": 3}

    added = client.post(base, json=variant, headers=admin_headers)
    assert added.status_code == 201
    stored = added.json()["data"]["variants"][0]
    assert stored["sku"] == "LIN-M-SAND"
    assert stored["available_stock"] == 3

    assert client.post(base, json=variant, headers=admin_headers).status_code == 400
    bad_size = client.post(base, json={**variant, "size": "XXXXL", "sku": "other"}, headers=admin_headers)
    assert bad_size.status_code == 400

    repriced = client.put(f"{base}/{stored['id']}", json={"price": 70.0}, headers=admin_headers)
    assert repriced.json()["data"]["variants"][0]["price"] == 70.0

    removed = client.delete(f"{base}/{stored['id']}", headers=admin_headers)
    assert removed.json()["data"]["variants"] == []


def test_product_with_open_order_cannot_be_deleted(client, product, place_order, admin_headers):
    place_order(product)
    response = client.delete(f"/api/products/{product['_id']}", headers=admin_headers)
    assert response.status_code == 400


def test_category_hierarchy(client, db, admin_headers):
    parent = client.post("/api/categories", json={"name": "Menswear"}, headers=admin_headers).json()["data"]
    child = client.post("/api/categories", json={"name": "Knitwear", "parent": parent["id"]},
                        headers=admin_headers).json()["data"]

    assert child["slug"] == "knitwear"
    assert child["level"] == 1
    assert child["path"] == parent["id"]

    detail = client.get("/api/categories/knitwear").json()["data"]
    assert detail["full_path"] == ["Menswear", "Knitwear"]

    tree = client.get("/api/categories/tree").json()["data"]
    menswear = next(node for node in tree if node["name"] == "Menswear")
    assert [c["name"] for c in menswear["children"]] == ["Knitwear"]

    loop = client.put(f"/api/categories/{parent['id']}", json={"parent": child["id"]}, headers=admin_headers)
    assert loop.status_code == 400

    blocked = client.delete(f"/api/categories/{parent['id']}", headers=admin_headers)
    assert blocked.status_code == 400


def test_duplicate_category_name(client, category, admin_headers):
    response = client.post("/api/categories", json={"name": "Shirts"}, headers=admin_headers)
    assert response.status_code == 400


def test_category_with_products_cannot_be_deleted(client, product, category, admin_headers):
    response = client.delete(f"/api/categories/{category['_id']}", headers=admin_headers)
    assert response.status_code == 400
