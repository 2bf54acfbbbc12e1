from datetime import timedelta

from database import utcnow
from services.audit import log_event

NEW_USER = {"first_name": "Alan", "last_name": "Turing", "email": "alan@example.com", "password": "enigma42"}


def test_register_is_audited(client, db):
    user_id = client.post("/api/auth/register", json=NEW_USER).json()["user"]["id"]

    entry = db["auditlog"].find_one({"action": "user_register"})
    assert entry["resource"] == "user"
    assert entry["resource_id"] == user_id
    assert entry["details"] == {"email": "alan@example.com"}
    assert entry["user_agent"] == "testclient"


def test_filter_logs_by_action(client, db, admin_headers):
    client.post("/api/auth/register", json=NEW_USER)
    client.post("/api/auth/login", json={"email": "alan@example.com", "password": "wrong-pass"})

    response = client.get("/api/audit", params={"action": "failed_login_attempt"}, headers=admin_headers)
    assert response.status_code == 200
    logs = response.json()["data"]
    assert len(logs) == 1
    assert logs[0]["status"] == "failure"
    assert response.json()["pagination"]["total"] == 1


def test_logs_for_a_resource(client, db, admin, admin_headers):
    log_event(db, "order_create", "order", user_id=admin["_id"], resource_id="abc123")
    log_event(db, "order_status_update", "order", user_id=admin["_id"], resource_id="abc123")
    log_event(db, "order_create", "order", user_id=admin["_id"], resource_id="other")

    logs = client.get("/api/audit/resource/order/abc123", headers=admin_headers).json()["data"]
    assert sorted(log["action"] for log in logs) == ["order_create", "order_status_update"]


def test_summary_groups_by_action(client, db, admin, admin_headers):
    for _ in range(2):
        log_event(db, "user_login", "user", user_id=admin["_id"])
    log_event(db, "user_login", "user", user_id=admin["_id"], status="failure")

    summary = client.get("/api/audit/summary", headers=admin_headers).json()["data"]
    logins = next(row for row in summary if row["action"] == "user_login")
    assert logins["total_count"] == 3
    assert sorted((s["status"], s["count"]) for s in logins["statuses"]) == [("failure", 1), ("success", 2)]


def test_cleanup_removes_old_entries(client, db, admin_headers):
    db["auditlog"].insert_one({"action": "user_login", "resource": "user", "status": "success",
                               "timestamp": utcnow() - timedelta(days=400)})
    log_event(db, "user_login", "user")

    response = client.delete("/api/audit/cleanup", params={"days": 90}, headers=admin_headers)
    assert response.json()["deleted_count"] == 1
    assert db["auditlog"].count_documents({"action": "user_login"}) == 1
    assert db["auditlog"].count_documents({"action": "audit_cleanup"}) == 1


def test_audit_is_admin_only(client, customer_headers):
    assert client.get("/api/audit", headers=customer_headers).status_code == 403


def test_unknown_log_id(client, admin_headers):
    assert client.get("/api/audit/5f8f8c44b54764421b7156c9", headers=admin_headers).status_code == 404


def test_malformed_user_id_is_not_raised(db):
    assert log_event(db, "user_login", "user", user_id="not-an-id") is None
    assert db["auditlog"].count_documents({}) == 0
