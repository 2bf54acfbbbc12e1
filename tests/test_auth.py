from config import MAX_LOGIN_ATTEMPTS
from tests.conftest import PASSWORD

NEW_USER = {
    "first_name": "Alan",
    "last_name": "Turing",
    "email": "Alan@Example.com",
    "password": "enigma42",
}


def test_register_returns_token_and_lowercases_email(client, db):
    response = client.post("/api/auth/register", json=NEW_USER)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["token"]
    assert body["user"]["email"] == "alan@example.com"
    assert body["user"]["role"] == "customer"
    assert "password_hash" not in body["user"]


def test_register_duplicate_email_is_rejected(client, db):
    client.post("/api/auth/register", json=NEW_USER)
    response = client.post("/api/auth/register", json={**NEW_USER, "email": "alan@example.com"})

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "User already exists with this email"}
    assert db["user"].count_documents({"email": "alan@example.com"}) == 1


def test_register_validation_errors_list_fields(client):
    response = client.post("/api/auth/register", json={**NEW_USER, "password": "123"})

    assert response.status_code == 422
    fields = [e["field"] for e in response.json()["errors"]]
    assert "password" in fields


def test_login_and_me(client, customer):
    response = client.post("/api/auth/login", json={"email": customer["email"], "password": PASSWORD})
    assert response.status_code == 200
    token = response.json()["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["email"] == customer["email"]
    assert me.json()["user"]["last_login"] is not None


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code == 401
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_account_locks_after_repeated_failures(client, db, customer):
    for _ in range(MAX_LOGIN_ATTEMPTS):
        response = client.post("/api/auth/login", json={"email": customer["email"], "password": "wrong-pass"})
        assert response.status_code == 401

    locked = client.post("/api/auth/login", json={"email": customer["email"], "password": PASSWORD})
    assert locked.status_code == 423
    assert db["user"].find_one({"_id": customer["_id"]})["lock_until"] is not None
    assert db["auditlog"].count_documents({"action": "account_locked"}) == 1


def test_successful_login_resets_failed_attempts(client, db, customer):
    client.post("/api/auth/login", json={"email": customer["email"], "password": "wrong-pass"})
    assert db["user"].find_one({"_id": customer["_id"]})["login_attempts"] == 1

    client.post("/api/auth/login", json={"email": customer["email"], "password": PASSWORD})
    assert db["user"].find_one({"_id": customer["_id"]})["login_attempts"] == 0


def test_admin_login_refuses_customers(client, customer, admin):
    response = client.post("/api/auth/admin/login", json={"email": customer["email"], "password": PASSWORD})
    assert response.status_code == 403

    response = client.post("/api/auth/admin/login", json={"email": admin["email"], "password": PASSWORD})
    assert response.status_code == 200
    assert response.json()["user"]["role"] == "admin"


def test_change_password(client, customer, customer_headers):
    wrong = client.post("/api/auth/change-password", headers=customer_headers,
                        json={"current_password": "nope", "new_password": "another1"})
    assert wrong.status_code == 400

    ok = client.post("/api/auth/change-password", headers=customer_headers,
                     json={"current_password": PASSWORD, "new_password": "another1"})
    assert ok.status_code == 200
    login = client.post("/api/auth/login", json={"email": customer["email"], "password": "another1"})
    assert login.status_code == 200
