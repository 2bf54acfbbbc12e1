import pytest

from exceptions import InsufficientStockError, ValidationError
from models import product as product_model
from services import inventory

VARIANTS = [
    {"size": "m", "color": "Blue", "sku": "oxf-m-blue", "stock": 4},
    {"size": "L", "color": "Blue", "sku": "oxf-l-blue", "stock": 0},
]


def test_removing_more_than_available_leaves_stock_untouched(db, product):
    with pytest.raises(InsufficientStockError) as exc:
        inventory.update_stock(db, product["_id"], None, -11)

    assert exc.value.available == 10
    assert exc.value.requested == 11
    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["inventory"]["quantity"] == 10
    assert stored["inventory"]["available_quantity"] == 10


def test_update_stock_records_history(db, product):
    updated = inventory.update_stock(db, product["_id"], None, 5, "restock", "PO-1")

    assert updated["inventory"]["quantity"] == 15
    assert updated["inventory"]["available_quantity"] == 15
    entry = updated["inventory"]["stock_history"][-1]
    assert entry["type"] == "in"
    assert entry["quantity"] == 5
    assert entry["reference"] == "PO-1"


def test_reserved_units_cannot_be_removed(db, product):
    inventory.reserve_stock(db, product["_id"], None, 8)

    with pytest.raises(InsufficientStockError):
        inventory.update_stock(db, product["_id"], None, -3)
    updated = inventory.update_stock(db, product["_id"], None, -2)
    assert updated["inventory"]["quantity"] == 8
    assert updated["inventory"]["reserved_quantity"] == 8
    assert updated["inventory"]["available_quantity"] == 0


def test_reserve_and_release_keep_counters_consistent(db, product):
    reserved = inventory.reserve_stock(db, product["_id"], None, 4, "ORD1")
    assert reserved["inventory"]["reserved_quantity"] == 4
    assert reserved["inventory"]["available_quantity"] == 6

    released = inventory.release_reserved_stock(db, product["_id"], None, 4, "ORD1")
    stock = released["inventory"]
    assert stock["reserved_quantity"] == 0
    assert stock["available_quantity"] == stock["quantity"] - stock["reserved_quantity"] == 10


def test_reserve_beyond_available_fails(db, product):
    with pytest.raises(InsufficientStockError):
        inventory.reserve_stock(db, product["_id"], None, 11)
    assert db["product"].find_one({"_id": product["_id"]})["inventory"]["reserved_quantity"] == 0


def test_release_more_than_reserved_fails(db, product):
    inventory.reserve_stock(db, product["_id"], None, 2)
    with pytest.raises(InsufficientStockError):
        inventory.release_reserved_stock(db, product["_id"], None, 3)


def test_products_with_variants_require_a_variant(db, make_product):
    shirt = make_product(variants=VARIANTS)
    with pytest.raises(ValidationError):
        inventory.reserve_stock(db, shirt["_id"], None, 1)


def test_variant_stock_is_tracked_per_variant(db, make_product):
    shirt = make_product(variants=VARIANTS)
    medium = shirt["variants"][0]
    assert medium["size"] == "M"
    assert medium["sku"] == "OXF-M-BLUE"

    updated = inventory.reserve_stock(db, shirt["_id"], medium["_id"], 3)
    variant = product_model.find_variant(updated, medium["_id"])
    assert variant["reserved_stock"] == 3
    assert variant["available_stock"] == 1
    assert product_model.find_variant(updated, shirt["variants"][1]["_id"])["reserved_stock"] == 0

    committed = inventory.commit_reserved_stock(db, shirt["_id"], medium["_id"], 3)
    variant = product_model.find_variant(committed, medium["_id"])
    assert variant["stock"] == 1
    assert variant["reserved_stock"] == 0
    assert variant["available_stock"] == 1
    assert committed["sales_count"] == 3


def test_dropping_below_reorder_point_raises_alert(db, make_product):
    product = make_product(inventory={"quantity": 7, "reorder_point": 5})
    updated = inventory.update_stock(db, product["_id"], None, -3)

    assert updated["inventory"]["low_stock_alert"] is True
    alerts = updated["inventory"]["low_stock_alerts"]
    assert len(alerts) == 1
    assert alerts[0]["current_stock"] == 4

    # already flagged, no second alert
    updated = inventory.update_stock(db, product["_id"], None, -1)
    assert len(updated["inventory"]["low_stock_alerts"]) == 1


def test_check_availability_reasons(db, make_product):
    shirt = make_product(variants=VARIANTS)
    assert inventory.check_stock_availability(db, shirt["_id"], None, 1)["reason"] == \
        "Variant selection is required"
    outcome = inventory.check_stock_availability(db, shirt["_id"], shirt["variants"][0]["_id"], 9)
    assert outcome == {"available": False, "reason": "Insufficient stock",
                       "available_stock": 4, "requested_quantity": 9}


def test_stock_route_is_admin_only(client, product, customer_headers, admin_headers):
    url = f"/api/inventory/stock/{product['_id']}"
    assert client.put(url, json={"quantity": 5}, headers=customer_headers).status_code == 403

    response = client.put(url, json={"quantity": -4, "reason": "damaged"}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["total_stock"] == 6


def test_stock_route_reports_shortfall(client, product, admin_headers):
    response = client.put(f"/api/inventory/stock/{product['_id']}", json={"quantity": -50},
                          headers=admin_headers)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["available"] == 10
    assert body["requested"] == 50


def test_bulk_update_reports_partial_failures(client, make_product, admin_headers):
    first, second = make_product(), make_product()
    response = client.put("/api/inventory/stock/bulk", headers=admin_headers, json={"updates": [
        {"product_id": str(first["_id"]), "quantity": 5},
        {"product_id": str(second["_id"]), "quantity": -20},
    ]})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [r["new_stock"] for r in data["results"]] == [15]
    assert len(data["errors"]) == 1
    assert data["errors"][0]["product_id"] == str(second["_id"])


def test_check_availability_route(client, product, customer_headers):
    response = client.post("/api/inventory/check-availability", headers=customer_headers, json={"items": [
        {"product_id": str(product["_id"]), "quantity": 2},
        {"product_id": str(product["_id"]), "quantity": 20},
    ]})
    body = response.json()
    assert body["all_available"] is False
    assert [r["available"] for r in body["data"]] == [True, False]


def test_low_stock_report_pages_only_low_products(client, make_product, admin_headers):
    make_product(name="Plenty A", inventory={"quantity": 100})
    make_product(name="Plenty B", inventory={"quantity": 100})
    make_product(name="Nearly Gone", inventory={"quantity": 3})

    response = client.get("/api/inventory/report", params={"low_stock": "true", "limit": 1, "page": 1},
                          headers=admin_headers)
    assert response.status_code == 200
    body = response.json()
    assert [row["name"] for row in body["data"]] == ["Nearly Gone"]
    assert body["data"][0]["low_stock"] is True
    assert body["pagination"] == {"page": 1, "limit": 1, "total": 1, "pages": 1}
