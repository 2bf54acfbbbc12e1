"""
Order document helpers: totals, status machines and derived fields.

An order carries three independent state machines: the order itself, each
embedded return request and each embedded refund. Every machine keeps its own
``status_history`` and stamps a timestamp field when a status is reached.
"""
import math
import secrets
from typing import Any, Dict, Optional

from bson import ObjectId

from config import FREE_SHIPPING_THRESHOLD, SHIPPING_RATES, TAX_RATE
from database import as_utc, utcnow
from exceptions import InvalidTransitionError, NotFoundError

ORDER_TRANSITIONS = {
    "pending": {"confirmed", "processing", "cancelled"},
    "confirmed": {"processing", "shipped", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}

ORDER_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}

RETURN_TRANSITIONS = {
    "requested": {"approved", "rejected"},
    "approved": {"shipped", "received"},
    "shipped": {"received"},
    "received": {"processed"},
    "processed": {"completed"},
    "rejected": set(),
    "completed": set(),
}

RETURN_TIMESTAMPS = {
    "approved": "approved_at",
    "shipped": "shipped_at",
    "received": "received_at",
    "processed": "processed_at",
    "completed": "completed_at",
}

REFUND_TRANSITIONS = {
    "pending": {"approved", "cancelled"},
    "approved": {"processing", "cancelled"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}

REFUND_TIMESTAMPS = {
    "approved": "approved_at",
    "processing": "processed_at",
    "completed": "completed_at",
    "failed": "failed_at",
}

STATUS_MESSAGES = {
    "confirmed": "Your order has been confirmed and is being prepared for shipment.",
    "processing": "Your order is being processed and will be shipped soon.",
    "shipped": "Your order has been shipped and is on its way to you.",
    "delivered": "Your order has been delivered successfully.",
    "cancelled": "Your order has been cancelled.",
    "refunded": "Your order has been refunded.",
}


def money(value: float) -> float:
    return round(float(value), 2)


def history_entry(status: str, note: Optional[str] = None, updated_by: Any = None) -> dict:
    return {"status": status, "timestamp": utcnow(), "note": note, "updated_by": updated_by}


def check_transition(transitions: Dict[str, set], current: str, target: str, what: str) -> None:
    if target not in transitions.get(current, set()):
        raise InvalidTransitionError(current, target, what)


# --------------------- Charges ---------------------

def calculate_shipping(method: str, subtotal: float) -> float:
    if method == "standard":
        return 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else SHIPPING_RATES["standard"]
    return SHIPPING_RATES.get(method, SHIPPING_RATES["standard"])


def calculate_tax(subtotal: float, rate: float = TAX_RATE) -> Dict[str, float]:
    return {"rate": rate, "amount": money(subtotal * rate)}


def calculate_discount(subtotal: float, value: float, discount_type: str = "fixed") -> float:
    if discount_type == "percentage":
        amount = subtotal * (value / 100)
    else:
        amount = value
    return money(max(0.0, min(amount, subtotal)))


def recalculate(order: dict) -> dict:
    """Recompute line totals, subtotal and total in place.

    total = subtotal + tax.amount + shipping.cost - discount.amount
    """
    for item in order["items"]:
        item["total_price"] = money(item["price"] * item["quantity"])
    order["subtotal"] = money(sum(item["total_price"] for item in order["items"]))
    order["discount"]["amount"] = money(min(order["discount"].get("amount", 0), order["subtotal"]))
    order["total"] = money(
        order["subtotal"]
        + order["tax"].get("amount", 0)
        + order["shipping"].get("cost", 0)
        - order["discount"]["amount"]
    )
    return order


# --------------------- Returns & refunds ---------------------

def _reference(prefix: str) -> str:
    return f"{prefix}{int(utcnow().timestamp() * 1000)}{secrets.token_hex(3).upper()}"


def build_return(data: dict, user_id: Any) -> dict:
    return {
        "_id": ObjectId(),
        "return_id": _reference("RET"),
        "items": data["items"],
        "return_reason": data.get("return_reason"),
        "notes": data.get("notes"),
        "status": "requested",
        "requested_at": utcnow(),
        "refund_amount": data.get("refund_amount"),
        "status_history": [history_entry("requested", "Return request created", user_id)],
    }


def build_refund(data: dict, user_id: Any) -> dict:
    return {
        "_id": ObjectId(),
        "refund_id": _reference("REF"),
        "amount": money(data["amount"]),
        "reason": data["reason"],
        "type": data.get("type") or "partial",
        "method": data.get("method") or "original_payment",
        "status": "pending",
        "requested_at": utcnow(),
        "requested_by": user_id,
        "notes": data.get("notes"),
        "status_history": [history_entry("pending", "Refund request created", user_id)],
    }


def find_embedded(order: dict, field: str, embedded_id: Any) -> dict:
    """Find a return or refund by its ObjectId or its RET/REF reference"""
    key = "return_id" if field == "returns" else "refund_id"
    for entry in order.get(field, []):
        if str(entry["_id"]) == str(embedded_id) or entry.get(key) == str(embedded_id).upper():
            return entry
    raise NotFoundError("Return request not found" if field == "returns" else "Refund not found")


def refunded_amount(order: dict) -> float:
    return money(sum(
        r["amount"] for r in order.get("refunds", [])
        if r["status"] not in ("failed", "cancelled")
    ))


def completed_refund_amount(order: dict) -> float:
    return money(sum(r["amount"] for r in order.get("refunds", []) if r["status"] == "completed"))


def return_stats(order: dict) -> dict:
    returns = order.get("returns", [])
    refunds = order.get("refunds", [])
    return {
        "returns": {
            "total": len(returns),
            "pending": sum(1 for r in returns if r["status"] == "requested"),
            "approved": sum(1 for r in returns if r["status"] == "approved"),
            "completed": sum(1 for r in returns if r["status"] == "completed"),
        },
        "refunds": {
            "total": len(refunds),
            "pending": sum(1 for r in refunds if r["status"] == "pending"),
            "completed": sum(1 for r in refunds if r["status"] == "completed"),
        },
    }


# --------------------- Derived fields ---------------------

def _full_address(addr: Optional[dict]) -> Optional[str]:
    if not addr:
        return None
    return f"{addr['street']}, {addr['city']}, {addr['state']} {addr['zip_code']}, {addr['country']}"


def with_virtuals(order: dict) -> dict:
    order = dict(order)
    created = as_utc(order.get("created_at")) or utcnow()
    order["formatted_order_number"] = f"#{order['order_number']}"
    order["age_in_days"] = math.ceil(abs((utcnow() - created).total_seconds()) / 86400)
    order["total_items"] = sum(item["quantity"] for item in order.get("items", []))
    order["formatted_total"] = f"{order.get('currency', 'USD')} {order['total']:,.2f}"
    order["full_billing_address"] = _full_address(order.get("billing_address"))
    order["full_shipping_address"] = _full_address(order.get("shipping_address"))
    return order
