"""
Stripe payments.

When STRIPE_SECRET_KEY is not set the service answers with mock intents and
refunds so the rest of the checkout flow can run locally.

Webhook deliveries are deduplicated on the Stripe event id, and marking an
order paid is a conditional update on ``payment_status != "paid"``: a replayed
``payment_intent.succeeded`` never commits stock twice.
"""
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import CURRENCY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from database import to_object_id, utcnow
from exceptions import NotFoundError, PaymentError, ValidationError
from models import order as order_model
from services import orders
from services.audit import log_event

logger = logging.getLogger(__name__)

TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}

STRIPE_REFUND_REASONS = {"duplicate_charge": "duplicate"}


def _configure() -> bool:
    if not STRIPE_SECRET_KEY:
        return False
    stripe.api_key = STRIPE_SECRET_KEY
    return True


def _cents(amount: float) -> int:
    return int(round(amount * 100))


def _stripe_customer(db, customer: dict):
    if customer.get("stripe_customer_id"):
        return stripe.Customer.retrieve(customer["stripe_customer_id"])
    stripe_customer = stripe.Customer.create(
        email=customer["email"],
        name=f"{customer['first_name']} {customer['last_name']}",
        phone=customer.get("phone"),
        metadata={"user_id": str(customer["_id"])},
    )
    db["user"].update_one({"_id": customer["_id"]}, {"$set": {"stripe_customer_id": stripe_customer["id"]}})
    return stripe_customer


def create_payment_intent(db, order_id: Any, user, request=None) -> Dict[str, Any]:
    order = orders.get_order_for(db, order_id, user)
    if order["payment_status"] == "paid":
        raise ValidationError("Order is already paid")
    if order["status"] == "cancelled":
        raise ValidationError("Order has been cancelled")
    customer = db["user"].find_one({"_id": order["customer"]})
    if not customer:
        raise NotFoundError("Customer not found")

    if not _configure():
        intent_id = f"pi_mock_{secrets.token_hex(8)}"
        db["order"].update_one({"_id": order["_id"]},
                               {"$set": {"payment_intent_id": intent_id, "payment_status": "pending"}})
        return {"client_secret": "mock_client_secret", "payment_intent_id": intent_id, "customer_id": None}

    address = order["shipping_address"]
    try:
        stripe_customer = _stripe_customer(db, customer)
        intent = stripe.PaymentIntent.create(
            amount=_cents(order["total"]),
            currency=order.get("currency", CURRENCY).lower(),
            customer=stripe_customer["id"],
            metadata={
                "order_id": str(order["_id"]),
                "user_id": str(customer["_id"]),
                "order_number": order["order_number"],
            },
            description=f"Order {order['order_number']}",
            automatic_payment_methods={"enabled": True},
            shipping={
                "name": f"{address['first_name']} {address['last_name']}",
                "address": {
                    "line1": address["street"],
                    "city": address["city"],
                    "state": address["state"],
                    "postal_code": address["zip_code"],
                    "country": address["country"],
                },
            },
        )
    except stripe.StripeError as e:
        logger.error("Stripe error creating intent for order %s: %s", order["order_number"], e)
        log_event(db, "payment_intent_create", "payment", user_id=user.id, resource_id=order["_id"],
                  status="failure", error_message=str(e)[:200], request=request)
        raise PaymentError(f"Payment intent creation failed: {str(e)[:100]}")

    db["order"].update_one({"_id": order["_id"]},
                           {"$set": {"payment_intent_id": intent["id"], "payment_status": "pending"}})
    log_event(db, "payment_intent_create", "payment", user_id=user.id, resource_id=order["_id"],
              details={"payment_intent_id": intent["id"], "amount": order["total"]}, request=request)
    return {
        "client_secret": intent["client_secret"],
        "payment_intent_id": intent["id"],
        "customer_id": stripe_customer["id"],
    }


# --------------------- Payment outcome ---------------------

def process_successful_payment(db, payment_intent_id: str, details: Optional[dict] = None) -> Dict[str, Any]:
    """Mark the order paid, commit its stock and confirm it. Safe to call repeatedly."""
    order = db["order"].find_one_and_update(
        {"payment_intent_id": payment_intent_id, "payment_status": {"$ne": "paid"}},
        {"$set": {"payment_status": "paid", "paid_at": utcnow(), "payment_details": details or {},
                  "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = db["order"].find_one({"payment_intent_id": payment_intent_id})
        if not existing:
            raise NotFoundError("Order not found for payment intent")
        return {"success": True, "order_id": str(existing["_id"]), "order_number": existing["order_number"],
                "already_processed": True}

    if order["status"] == "cancelled":
        logger.warning("Payment %s received for cancelled order %s", payment_intent_id, order["order_number"])
    else:
        order = orders.commit_inventory(db, order)
        if order["status"] == "pending":
            orders.update_status(db, order["_id"], "confirmed", "Payment received")

    logger.info("Payment %s succeeded for order %s", payment_intent_id, order["order_number"])
    log_event(db, "payment_success", "payment", user_id=order["customer"], resource_id=order["_id"],
              details={"payment_intent_id": payment_intent_id, "amount": order["total"]})
    return {"success": True, "order_id": str(order["_id"]), "order_number": order["order_number"]}


def process_failed_payment(db, payment_intent_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    order = db["order"].find_one_and_update(
        {"payment_intent_id": payment_intent_id, "payment_status": "pending"},
        {"$set": {"payment_status": "failed", "payment_details.failure_reason": reason, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = db["order"].find_one({"payment_intent_id": payment_intent_id})
        if not existing:
            raise NotFoundError("Order not found for payment intent")
        return {"success": True, "order_id": str(existing["_id"]), "order_number": existing["order_number"],
                "already_processed": True}

    if "cancelled" in order_model.ORDER_TRANSITIONS.get(order["status"], set()):
        orders.update_status(db, order["_id"], "cancelled", reason or "Payment failed")
    logger.warning("Payment %s failed for order %s: %s", payment_intent_id, order["order_number"], reason)
    log_event(db, "payment_failed", "payment", user_id=order["customer"], resource_id=order["_id"],
              details={"payment_intent_id": payment_intent_id}, status="failure", error_message=reason)
    return {"success": True, "order_id": str(order["_id"]), "order_number": order["order_number"]}


def confirm_payment(db, payment_intent_id: str, user) -> Dict[str, Any]:
    order = db["order"].find_one({"payment_intent_id": payment_intent_id})
    if not order:
        raise NotFoundError("Order not found for payment intent")
    if not user.is_admin and str(order["customer"]) != user.id:
        raise NotFoundError("Order not found for payment intent")

    details: Dict[str, Any] = {}
    if _configure():
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            raise PaymentError(f"Payment confirmation failed: {str(e)[:100]}")
        if intent["status"] != "succeeded":
            return {"success": False, "message": "Payment not succeeded", "status": intent["status"]}
        details = {"stripe_status": intent["status"], "amount_received": intent.get("amount_received")}
    return process_successful_payment(db, payment_intent_id, details)


def _record_refund_event(db, charge) -> None:
    order = db["order"].find_one({"payment_intent_id": charge["payment_intent"]})
    if not order:
        logger.warning("Refund event for unknown payment intent %s", charge["payment_intent"])
        return
    refunded = charge["amount_refunded"] / 100
    status = "refunded" if refunded >= order["total"] else "partially_refunded"
    db["order"].update_one({"_id": order["_id"]}, {"$set": {
        "payment_status": status,
        "payment_details.refunded_amount": refunded,
        "payment_details.refunded_at": utcnow(),
        "updated_at": utcnow(),
    }})


def handle_webhook(db, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    if not STRIPE_WEBHOOK_SECRET:
        raise PaymentError("Webhook secret is not configured")
    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except ValueError:
        raise ValidationError("Invalid webhook payload")
    except stripe.SignatureVerificationError:
        raise ValidationError("Webhook signature verification failed")

    try:
        db["payment_event"].insert_one({"_id": event["id"], "type": event["type"], "received_at": utcnow()})
    except DuplicateKeyError:
        logger.info("Ignoring duplicate webhook event %s", event["id"])
        return {"received": True, "duplicate": True}

    obj = event["data"]["object"]
    try:
        if event["type"] == "payment_intent.succeeded":
            process_successful_payment(db, obj["id"], {"stripe_status": "succeeded",
                                                       "amount_received": obj.get("amount_received")})
        elif event["type"] == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            process_failed_payment(db, obj["id"], error.get("message"))
        elif event["type"] == "charge.refunded":
            _record_refund_event(db, obj)
        else:
            logger.info("Unhandled webhook event type %s", event["type"])
    except Exception:
        # let Stripe redeliver the event
        db["payment_event"].delete_one({"_id": event["id"]})
        raise
    return {"received": True}


# --------------------- Refunds ---------------------

def refund_payment(order: dict, amount: Optional[float], reason: str) -> Dict[str, Any]:
    """Refund an order's payment at the gateway; amount None refunds in full"""
    if not order.get("payment_intent_id"):
        raise PaymentError("No payment intent found for this order")
    amount = amount if amount is not None else order["total"]
    if not _configure():
        return {"refund_id": f"re_mock_{secrets.token_hex(8)}", "amount": amount, "status": "succeeded"}
    try:
        refund = stripe.Refund.create(
            payment_intent=order["payment_intent_id"],
            amount=_cents(amount),
            reason=STRIPE_REFUND_REASONS.get(reason, "requested_by_customer"),
            metadata={"order_id": str(order["_id"]), "order_number": order["order_number"], "reason": reason},
        )
    except stripe.StripeError as e:
        logger.error("Stripe refund failed for order %s: %s", order["order_number"], e)
        raise PaymentError(f"Refund creation failed: {str(e)[:100]}")
    return {"refund_id": refund["id"], "amount": refund["amount"] / 100, "status": refund["status"]}


def create_refund(db, order_id: Any, amount: Optional[float], reason: str, user_id: Any,
                  request=None) -> dict:
    """Refund straight away: record, approve and process a refund on the order"""
    order = orders.get_order(db, order_id)
    if order["payment_status"] not in ("paid", "partially_refunded"):
        raise ValidationError("Order has not been paid")
    if amount is None:
        amount = order_model.money(order["total"] - order_model.refunded_amount(order))
    refund = orders.create_refund(db, order_id, {
        "amount": amount,
        "reason": reason,
        "type": "full" if amount >= order["total"] else "partial",
    }, user_id, request)
    orders.update_refund_status(db, order_id, refund["_id"], "approved", "Approved for immediate refund",
                                user_id, request)
    return orders.process_refund(db, order_id, refund["_id"], user_id, request)


# --------------------- Saved cards ---------------------

def list_payment_methods(db, user_id: Any) -> List[dict]:
    customer = db["user"].find_one({"_id": to_object_id(user_id)})
    if not customer or not customer.get("stripe_customer_id") or not _configure():
        return []
    try:
        methods = stripe.PaymentMethod.list(customer=customer["stripe_customer_id"], type="card")
    except stripe.StripeError as e:
        raise PaymentError(f"Failed to get payment methods: {str(e)[:100]}")
    return [{
        "id": pm["id"],
        "brand": pm["card"]["brand"],
        "last4": pm["card"]["last4"],
        "exp_month": pm["card"]["exp_month"],
        "exp_year": pm["card"]["exp_year"],
        "is_default": (pm.get("metadata") or {}).get("is_default") == "true",
    } for pm in methods["data"]]


def save_payment_method(db, user_id: Any, payment_method_id: str, is_default: bool = False) -> Dict[str, Any]:
    if not _configure():
        raise PaymentError("Payment gateway is not configured")
    customer = db["user"].find_one({"_id": to_object_id(user_id)})
    if not customer:
        raise NotFoundError("Customer not found")
    try:
        stripe_customer = _stripe_customer(db, customer)
        stripe.PaymentMethod.attach(payment_method_id, customer=stripe_customer["id"])
        if is_default:
            stripe.Customer.modify(stripe_customer["id"],
                                   invoice_settings={"default_payment_method": payment_method_id})
    except stripe.StripeError as e:
        raise PaymentError(f"Failed to save payment method: {str(e)[:100]}")
    return {"success": True, "payment_method_id": payment_method_id}


def delete_payment_method(payment_method_id: str) -> Dict[str, Any]:
    if not _configure():
        raise PaymentError("Payment gateway is not configured")
    try:
        stripe.PaymentMethod.detach(payment_method_id)
    except stripe.StripeError as e:
        raise PaymentError(f"Failed to delete payment method: {str(e)[:100]}")
    return {"success": True}


def payment_analytics(db, time_range: str = "30d") -> Dict[str, Any]:
    since = utcnow() - timedelta(days=TIME_RANGES.get(time_range, 30))
    rows = list(db["order"].aggregate([
        {"$match": {"created_at": {"$gte": since}, "payment_status": "paid"}},
        {"$group": {
            "_id": None,
            "total_revenue": {"$sum": "$total"},
            "total_orders": {"$sum": 1},
            "average_order_value": {"$avg": "$total"},
        }},
    ]))
    if not rows:
        return {"time_range": time_range, "total_revenue": 0, "total_orders": 0, "average_order_value": 0}
    return {
        "time_range": time_range,
        "total_revenue": order_model.money(rows[0]["total_revenue"]),
        "total_orders": rows[0]["total_orders"],
        "average_order_value": order_model.money(rows[0]["average_order_value"] or 0),
    }
