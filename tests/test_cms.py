import pytest


def _create(client, headers, **overrides):
    body = {"type": "page", "title": "About Us", "content": "Who we are", "status": "published"}
    body.update(overrides)
    return client.post("/api/cms", json=body, headers=headers)


@pytest.fixture
def promotion(client, admin_headers):
    response = _create(client, admin_headers, type="promotion", title="Launch", content="Five off",
                       promotion={"code": "launch5", "discount_type": "fixed", "discount_value": 5,
                                  "usage_limit": 1})
    assert response.status_code == 201
    return response.json()["data"]


def test_content_is_admin_only(client, customer_headers):
    assert _create(client, customer_headers).status_code == 403
    assert client.get("/api/cms", headers=customer_headers).status_code == 403


def test_create_page_derives_slug(client, admin_headers):
    data = _create(client, admin_headers).json()["data"]

    assert data["slug"] == "about-us"
    assert data["page"]["is_published"] is True
    assert data["analytics"]["views"] == 0


def test_public_page_counts_views(client, admin_headers):
    _create(client, admin_headers)

    client.get("/api/cms/public/pages/about-us")
    response = client.get("/api/cms/public/pages/about-us")
    assert response.status_code == 200
    assert response.json()["data"]["analytics"]["views"] == 2
    assert client.get("/api/cms/public/pages/missing").status_code == 404


def test_draft_pages_are_not_public(client, admin_headers):
    _create(client, admin_headers, title="Secret", status="draft")
    assert client.get("/api/cms/public/pages/secret").status_code == 404


def test_public_promotions_list_codes_uppercase(client, promotion):
    data = client.get("/api/cms/public/promotions").json()["data"]
    assert [p["promotion"]["code"] for p in data] == ["LAUNCH5"]


def test_coupon_is_redeemed_once(client, db, product, place_order, promotion):
    first = place_order(product, coupon_code="launch5")
    assert first.status_code == 201
    order = first.json()["data"]
    assert order["discount"] == {"amount": 5.0, "code": "LAUNCH5", "type": "fixed"}
    assert order["total"] == pytest.approx(50.0 + 4.0 + 10.0 - 5.0)
    assert db["content"].find_one({"type": "promotion"})["promotion"]["used_count"] == 1

    second = place_order(product, coupon_code="LAUNCH5")
    assert second.status_code == 400
    assert db["order"].count_documents({}) == 1
    assert db["product"].find_one({"_id": product["_id"]})["inventory"]["reserved_quantity"] == 1
    assert client.get("/api/cms/public/promotions").json()["data"] == []


def test_track_counts_clicks(client, promotion):
    url = f"/api/cms/public/{promotion['id']}/track"

    response = client.post(url, json={"action": "click"})
    assert response.json()["data"]["clicks"] == 1
    assert client.post(url, json={"action": "share"}).status_code == 422


def test_duplicate_resets_status_and_usage(client, admin_headers, promotion):
    response = client.post(f"/api/cms/{promotion['id']}/duplicate", headers=admin_headers)

    assert response.status_code == 201
    copy = response.json()["data"]
    assert copy["title"] == "Launch (Copy)"
    assert copy["status"] == "draft"
    assert copy["promotion"]["used_count"] == 0
    assert copy["id"] != promotion["id"]


def test_bulk_status_and_delete(client, db, admin_headers):
    ids = [_create(client, admin_headers, title=t).json()["data"]["id"] for t in ("One", "Two")]

    response = client.put("/api/cms/bulk/status", json={"content_ids": ids, "status": "archived"},
                          headers=admin_headers)
    assert response.json()["modified_count"] == 2
    assert db["content"].count_documents({"status": "archived"}) == 2

    assert client.delete(f"/api/cms/{ids[0]}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/cms/{ids[0]}", headers=admin_headers).status_code == 404
    assert db["auditlog"].count_documents({"action": "content_delete"}) == 1
