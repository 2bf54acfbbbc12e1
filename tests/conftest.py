import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db
from main import app
from models import product as product_model
from schemas import Category
from schemas import User as UserSchema
from security import hash_password, token_for_user

PASSWORD = "secret123"

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "street": "12 Analytical Way",
    "city": "London",
    "state": "LDN",
    "zip_code": "N1 9GU",
    "country": "GB",
}


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["ecommerce_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email, role="customer", first_name="Test"):
    user_id = create_document(db, "user", UserSchema(
        first_name=first_name,
        last_name=role.title(),
        email=email,
        password_hash=hash_password(PASSWORD),
        role=role,
    ))
    return db["user"].find_one({"_id": ObjectId(user_id)})


def auth(user):
    return {"Authorization": f"Bearer {token_for_user(user)}"}


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role="admin", first_name="Grace")


@pytest.fixture
def customer(db):
    return make_user(db, "ada@example.com", first_name="Ada")


@pytest.fixture
def admin_headers(admin):
    return auth(admin)


@pytest.fixture
def customer_headers(customer):
    return auth(customer)


@pytest.fixture
def category(db):
    category_id = create_document(db, "category", Category(name="Shirts", slug="shirts"))
    return db["category"].find_one({"_id": ObjectId(category_id)})


@pytest.fixture
def make_product(db, category):
    def _make(**overrides):
        data = {
            "name": "Oxford Shirt",
            "description": "Cotton oxford shirt",
            "price": 50.0,
            "sku": f"SKU-{ObjectId()}",
            "category": category["_id"],
            "brand": "Acme",
            "gender": "men",
            "status": "active",
            "inventory": {"quantity": 10},
        }
        data.update(overrides)
        product_id = create_document(db, "product", product_model.build_product(data))
        return db["product"].find_one({"_id": ObjectId(product_id)})
    return _make


@pytest.fixture
def product(make_product):
    return make_product()


@pytest.fixture
def place_order(client, customer_headers):
    def _place(product, quantity=1, variant_id=None, headers=None, **extra):
        line = {"product_id": str(product["_id"]), "quantity": quantity}
        if variant_id:
            line["variant_id"] = str(variant_id)
        body = {"items": [line], "shipping_address": ADDRESS, **extra}
        return client.post("/api/orders", json=body, headers=headers or customer_headers)
    return _place
