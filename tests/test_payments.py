import pytest

from services import payments
from tests.conftest import auth, make_user


@pytest.fixture
def pending_order(product, place_order):
    return place_order(product, quantity=2).json()["data"]


def _intent(client, order, headers):
    response = client.post("/api/payments/create-payment-intent", json={"order_id": order["id"]}, headers=headers)
    assert response.status_code == 200
    return response.json()["data"]


@pytest.fixture
def webhook(monkeypatch):
    """Deliver an already-verified Stripe event to the webhook endpoint"""
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", "whsec_test")

    def deliver(client, event):
        monkeypatch.setattr(payments.stripe.Webhook, "construct_event",
                            lambda payload, signature, secret: event)
        return client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    return deliver


def test_mock_intent_without_gateway_key(client, db, pending_order, customer_headers):
    data = _intent(client, pending_order, customer_headers)

    assert data["client_secret"] == "mock_client_secret"
    assert data["payment_intent_id"].startswith("pi_mock_")
    assert db["order"].find_one()["payment_intent_id"] == data["payment_intent_id"]


def test_intent_for_someone_elses_order(client, db, pending_order):
    other = auth(make_user(db, "mallory@example.com"))
    response = client.post("/api/payments/create-payment-intent", json={"order_id": pending_order["id"]},
                           headers=other)
    assert response.status_code == 403


def test_confirm_payment_marks_paid_once(client, db, product, pending_order, customer_headers):
    intent = _intent(client, pending_order, customer_headers)

    first = client.post("/api/payments/confirm-payment", json={"payment_intent_id": intent["payment_intent_id"]},
                        headers=customer_headers)
    assert first.status_code == 200
    order = db["order"].find_one()
    assert order["payment_status"] == "paid"
    assert order["status"] == "confirmed"
    assert order["inventory_committed"] is True
    assert db["product"].find_one({"_id": product["_id"]})["inventory"]["quantity"] == 8

    second = client.post("/api/payments/confirm-payment", json={"payment_intent_id": intent["payment_intent_id"]},
                         headers=customer_headers)
    assert second.json()["data"]["already_processed"] is True
    assert db["product"].find_one({"_id": product["_id"]})["inventory"]["quantity"] == 8


def test_paid_order_cannot_get_a_new_intent(client, pending_order, customer_headers):
    intent = _intent(client, pending_order, customer_headers)
    client.post("/api/payments/confirm-payment", json={"payment_intent_id": intent["payment_intent_id"]},
                headers=customer_headers)

    response = client.post("/api/payments/create-payment-intent", json={"order_id": pending_order["id"]},
                           headers=customer_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Order is already paid"


def test_failed_payment_cancels_and_releases(client, db, product, pending_order, customer_headers):
    intent = _intent(client, pending_order, customer_headers)

    response = client.post("/api/payments/failed", headers=customer_headers,
                           json={"payment_intent_id": intent["payment_intent_id"], "reason": "Card declined"})
    assert response.status_code == 200
    order = db["order"].find_one()
    assert order["payment_status"] == "failed"
    assert order["status"] == "cancelled"
    assert db["product"].find_one({"_id": product["_id"]})["inventory"]["available_quantity"] == 10


def test_webhook_is_idempotent(client, db, product, pending_order, customer_headers, webhook):
    intent = _intent(client, pending_order, customer_headers)
    event = {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent["payment_intent_id"], "amount_received": 11800}},
    }

    first = webhook(client, event)
    assert first.status_code == 200
    assert first.json() == {"received": True}

    second = webhook(client, event)
    assert second.json() == {"received": True, "duplicate": True}

    order = db["order"].find_one()
    assert order["payment_status"] == "paid"
    assert order["payment_details"]["amount_received"] == 11800
    assert db["product"].find_one({"_id": product["_id"]})["inventory"]["quantity"] == 8
    assert db["payment_event"].count_documents({}) == 1


def test_webhook_charge_refunded(client, db, pending_order, customer_headers, webhook):
    intent = _intent(client, pending_order, customer_headers)
    total = db["order"].find_one()["total"]

    webhook(client, {"id": "evt_2", "type": "charge.refunded", "data": {"object": {
        "payment_intent": intent["payment_intent_id"], "amount_refunded": 500,
    }}})
    order = db["order"].find_one()
    assert order["payment_status"] == "partially_refunded"
    assert order["payment_details"]["refunded_amount"] == 5.0

    webhook(client, {"id": "evt_3", "type": "charge.refunded", "data": {"object": {
        "payment_intent": intent["payment_intent_id"], "amount_refunded": int(round(total * 100)),
    }}})
    assert db["order"].find_one()["payment_status"] == "refunded"


def test_webhook_requires_configured_secret(client, monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", None)
    response = client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "sig"})
    assert response.status_code == 402


def test_webhook_rejects_bad_signature(client, monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    response = client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "bogus"})
    assert response.status_code == 400


def test_saved_cards_need_gateway(client, customer_headers):
    assert client.get("/api/payments/payment-methods", headers=customer_headers).json()["data"] == []
    response = client.post("/api/payments/save-payment-method", json={"payment_method_id": "pm_1"},
                           headers=customer_headers)
    assert response.status_code == 402


@pytest.fixture
def gateway(monkeypatch):
    """Configure a Stripe key and record the calls made to the Stripe API"""
    calls = {"customers": [], "retrieved": [], "intents": [], "refunds": []}
    monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(payments.stripe, "api_key", None)

    def create_customer(**kwargs):
        calls["customers"].append(kwargs)
        return {"id": "cus_123"}

    def retrieve_customer(customer_id):
        calls["retrieved"].append(customer_id)
        return {"id": customer_id}

    def create_intent(**kwargs):
        calls["intents"].append(kwargs)
        intent_id = f"pi_test_{len(calls['intents'])}"
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def create_refund(**kwargs):
        calls["refunds"].append(kwargs)
        return {"id": "re_test_1", "amount": kwargs["amount"], "status": "succeeded"}

    monkeypatch.setattr(payments.stripe.Customer, "create", create_customer)
    monkeypatch.setattr(payments.stripe.Customer, "retrieve", retrieve_customer)
    monkeypatch.setattr(payments.stripe.PaymentIntent, "create", create_intent)
    monkeypatch.setattr(payments.stripe.PaymentIntent, "retrieve",
                        lambda intent_id: {"id": intent_id, "status": "succeeded", "amount_received": 11800})
    monkeypatch.setattr(payments.stripe.Refund, "create", create_refund)
    return calls


def _raise_stripe_error(**kwargs):
    raise payments.stripe.StripeError("Card network unavailable")


def test_intent_through_stripe(client, db, customer, pending_order, customer_headers, gateway):
    data = _intent(client, pending_order, customer_headers)

    order = db["order"].find_one()
    assert data == {"client_secret": "pi_test_1_secret", "payment_intent_id": "pi_test_1", "customer_id": "cus_123"}
    assert order["payment_intent_id"] == "pi_test_1"
    assert db["user"].find_one({"_id": customer["_id"]})["stripe_customer_id"] == "cus_123"

    sent = gateway["intents"][0]
    assert sent["amount"] == round(order["total"] * 100)
    assert sent["currency"] == "usd"
    assert sent["customer"] == "cus_123"
    assert sent["metadata"] == {"order_id": pending_order["id"], "user_id": str(customer["_id"]),
                                "order_number": order["order_number"]}
    assert gateway["customers"][0]["email"] == customer["email"]


def test_second_intent_reuses_stripe_customer(client, db, pending_order, customer_headers, gateway):
    _intent(client, pending_order, customer_headers)
    second = _intent(client, pending_order, customer_headers)

    assert second["payment_intent_id"] == "pi_test_2"
    assert len(gateway["customers"]) == 1
    assert gateway["retrieved"] == ["cus_123"]
    assert db["order"].find_one()["payment_intent_id"] == "pi_test_2"


def test_stripe_error_on_intent(client, db, pending_order, customer_headers, gateway, monkeypatch):
    monkeypatch.setattr(payments.stripe.PaymentIntent, "create", _raise_stripe_error)

    response = client.post("/api/payments/create-payment-intent", json={"order_id": pending_order["id"]},
                           headers=customer_headers)
    assert response.status_code == 402
    assert response.json()["success"] is False
    assert response.json()["message"].startswith("Payment intent creation failed")
    assert db["order"].find_one().get("payment_intent_id") is None
    assert db["auditlog"].count_documents({"action": "payment_intent_create", "status": "failure"}) == 1


def _paid_through_stripe(client, db, order, headers):
    intent = _intent(client, order, headers)
    client.post("/api/payments/confirm-payment", json={"payment_intent_id": intent["payment_intent_id"]},
                headers=headers)
    assert db["order"].find_one()["payment_status"] == "paid"


def test_refund_through_stripe(client, db, pending_order, customer_headers, admin_headers, gateway):
    _paid_through_stripe(client, db, pending_order, customer_headers)

    response = client.post(f"/api/orders/{pending_order['id']}/refund",
                           json={"amount": 18.0, "reason": "duplicate_charge"}, headers=admin_headers)
    assert response.status_code == 200
    refund = response.json()["data"]
    assert refund["status"] == "completed"
    assert refund["gateway_refund_id"] == "re_test_1"

    sent = gateway["refunds"][0]
    assert sent["payment_intent"] == "pi_test_1"
    assert sent["amount"] == 1800
    assert sent["reason"] == "duplicate"
    assert db["order"].find_one()["payment_status"] == "partially_refunded"


def test_stripe_error_fails_the_refund(client, db, pending_order, customer_headers, admin_headers, gateway,
                                       monkeypatch):
    _paid_through_stripe(client, db, pending_order, customer_headers)
    monkeypatch.setattr(payments.stripe.Refund, "create", _raise_stripe_error)

    response = client.post(f"/api/orders/{pending_order['id']}/refund", json={"amount": 18.0},
                           headers=admin_headers)
    refund = response.json()["data"]
    assert refund["status"] == "failed"
    assert refund["failure_reason"].startswith("Refund creation failed")
    assert db["order"].find_one()["payment_status"] == "paid"
