"""
Order lifecycle.

Stock moves with the order:

* creation reserves every line (a failure releases what was already reserved),
* payment or shipping commits the reservations into sales,
* cancellation releases reservations, or puts committed units back on the shelf.

Status changes are applied with a conditional update on the status the change
was computed from, so two concurrent transitions cannot both succeed.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from config import CURRENCY, TAX_RATE
from database import create_document, next_sequence, paginate, to_object_id, update_and_fetch, utcnow
from exceptions import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    PaymentError,
    PermissionDeniedError,
    ValidationError,
)
from models import order as order_model
from models import product as product_model
from schemas import Address, Order
from services import cms, inventory
from services.audit import log_event

logger = logging.getLogger(__name__)

SHIPPING_DAYS = {"standard": 5, "express": 2, "overnight": 1, "free": 7}


def get_order(db, order_id: Any) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_order_for(db, order_id: Any, user) -> dict:
    """Load an order the caller is allowed to see (its customer or an admin)"""
    order = get_order(db, order_id)
    if not user.is_admin and str(order["customer"]) != user.id:
        raise PermissionDeniedError("Access denied")
    return order


def _snapshot_item(db, line: dict) -> dict:
    product = inventory.get_product(db, line["product_id"])
    if product["status"] != "active":
        raise ValidationError(f"Product {product['name']} is not available")
    variant_id = line.get("variant_id")
    check = product_model.check_stock_availability(product, variant_id, line["quantity"])
    if not check["available"]:
        raise InsufficientStockError(f"Insufficient stock for product {product['name']}: {check['reason']}",
                                     available=check.get("available_stock"), requested=line["quantity"])
    variant = product_model.find_variant(product, variant_id) if variant_id else None
    images = product.get("images") or []
    primary = next((i for i in images if i.get("is_primary")), images[0] if images else None)
    price = product_model.effective_price(product, variant_id)
    return {
        "product": product["_id"],
        "variant_id": variant["_id"] if variant else None,
        "variant": {"size": variant["size"], "color": variant["color"], "sku": variant["sku"]} if variant else None,
        "name": product["name"],
        "image": primary["url"] if primary else None,
        "price": price,
        "quantity": line["quantity"],
        "total_price": order_model.money(price * line["quantity"]),
    }


def _reserve_items(db, items: List[dict], reference: str, user_id: Any) -> None:
    reserved = []
    try:
        for item in items:
            inventory.reserve_stock(db, item["product"], item["variant_id"], item["quantity"], reference, user_id)
            reserved.append(item)
    except (InsufficientStockError, NotFoundError, ValidationError):
        for item in reserved:
            inventory.release_reserved_stock(db, item["product"], item["variant_id"], item["quantity"],
                                             reference, user_id)
        raise


def create_order(db, user_id: Any, data: dict, request=None) -> dict:
    """Validate the lines, reserve their stock and store a pending order"""
    if not data.get("items"):
        raise ValidationError("Order must contain at least one item")
    customer = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not customer:
        raise NotFoundError("Customer not found")

    items = [_snapshot_item(db, line) for line in data["items"]]
    subtotal = order_model.money(sum(item["total_price"] for item in items))
    method = data.get("shipping_method") or "standard"
    shipping_cost = order_model.calculate_shipping(method, subtotal)

    discount = {"amount": 0.0, "code": None, "type": "fixed"}
    promotion = None
    if data.get("coupon_code"):
        promotion = cms.quote_promotion(db, data["coupon_code"], subtotal)
        discount = {"amount": promotion["amount"], "code": promotion["code"], "type": promotion.get("type", "fixed")}
        if promotion["free_shipping"]:
            shipping_cost = 0.0

    shipping_address = Address(**data["shipping_address"]).model_dump()
    billing_address = Address(**(data.get("billing_address") or data["shipping_address"])).model_dump()
    order_number = f"ORD{next_sequence(db, 'order'):06d}"

    _reserve_items(db, items, order_number, user_id)
    if promotion:
        try:
            cms.redeem_promotion(db, promotion["content_id"])
        except ValidationError:
            for item in items:
                inventory.release_reserved_stock(db, item["product"], item["variant_id"], item["quantity"],
                                                 order_number, user_id)
            raise

    info = data.get("customer_info") or {}
    order = {
        "order_number": order_number,
        "customer": customer["_id"],
        "customer_info": {
            "first_name": info.get("first_name") or customer["first_name"],
            "last_name": info.get("last_name") or customer["last_name"],
            "email": info.get("email") or customer["email"],
            "phone": info.get("phone") or customer.get("phone"),
        },
        "items": items,
        "subtotal": subtotal,
        "tax": order_model.calculate_tax(subtotal, TAX_RATE),
        "shipping": {
            "cost": shipping_cost,
            "method": method,
            "estimated_delivery": utcnow() + timedelta(days=SHIPPING_DAYS[method]),
        },
        "discount": discount,
        "total": 0,
        "currency": CURRENCY,
        "payment_method": data.get("payment_method") or "stripe",
        "billing_address": billing_address,
        "shipping_address": shipping_address,
        "notes": data.get("notes"),
        "source": data.get("source") or "web",
        "status_history": [order_model.history_entry("pending", "Order created", customer["_id"])],
    }
    if request is not None:
        order["ip_address"] = request.client.host if request.client else None
        order["user_agent"] = request.headers.get("user-agent")
    order_model.recalculate(order)
    doc = Order(**order).model_dump()
    order_id = create_document(db, "order", doc)

    logger.info("Order %s created for %s (total %.2f)", order_number, customer["email"], doc["total"])
    log_event(db, "order_create", "order", user_id=user_id, resource_id=order_id,
              details={"order_number": order_number, "total": doc["total"], "item_count": len(items)},
              request=request)
    return get_order(db, order_id)


# --------------------- Stock movements ---------------------

def commit_inventory(db, order: dict, user_id: Any = None) -> dict:
    """Turn the order's reservations into sales once"""
    claimed = db["order"].find_one_and_update(
        {"_id": order["_id"], "inventory_committed": {"$ne": True}},
        {"$set": {"inventory_committed": True}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        return get_order(db, order["_id"])
    for item in order["items"]:
        inventory.commit_reserved_stock(db, item["product"], item.get("variant_id"), item["quantity"],
                                        order["order_number"], user_id)
    return claimed


def _restore_inventory(db, order: dict, user_id: Any = None) -> None:
    for item in order["items"]:
        try:
            if order.get("inventory_committed"):
                inventory.update_stock(db, item["product"], item.get("variant_id"), item["quantity"],
                                       "order_cancelled", order["order_number"], user_id)
            else:
                inventory.release_reserved_stock(db, item["product"], item.get("variant_id"), item["quantity"],
                                                 order["order_number"], user_id)
        except NotFoundError:
            logger.warning("Product %s of order %s no longer exists, stock not restored",
                           item["product"], order["order_number"])


# --------------------- Status ---------------------

def _apply_status(db, order: dict, status: str, note: Optional[str], user_id: Any,
                  extra: Optional[dict] = None) -> dict:
    order_model.check_transition(order_model.ORDER_TRANSITIONS, order["status"], status, "order")
    now = utcnow()
    updates = {"status": status, "updated_at": now, **(extra or {})}
    if status in order_model.ORDER_TIMESTAMPS:
        updates[order_model.ORDER_TIMESTAMPS[status]] = now
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": order["status"]},
        {"$set": updates, "$push": {"status_history": order_model.history_entry(
            status, note or order_model.STATUS_MESSAGES.get(status), to_object_id(user_id) if user_id else None,
        )}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order status was changed by another request, please retry")
    return updated


def update_status(db, order_id: Any, status: str, note: Optional[str] = None, user_id: Any = None,
                  tracking: Optional[dict] = None, request=None) -> dict:
    order = get_order(db, order_id)
    old_status = order["status"]
    extra = {}
    if status == "cancelled":
        extra["cancellation_reason"] = note
    for key in ("tracking_number", "carrier"):
        if tracking and tracking.get(key):
            extra[f"shipping.{key}"] = tracking[key]

    updated = _apply_status(db, order, status, note, user_id, extra)
    if status == "cancelled":
        _restore_inventory(db, updated, user_id)
    elif status == "shipped":
        updated = commit_inventory(db, updated, user_id)

    logger.info("Order %s moved from %s to %s", order["order_number"], old_status, status)
    log_event(db, "order_status_update", "order", user_id=user_id, resource_id=order["_id"],
              details={"order_number": order["order_number"], "old_status": old_status,
                       "new_status": status, "note": note}, request=request)
    return get_order(db, order["_id"])


def cancel_order(db, order_id: Any, reason: Optional[str], user, request=None) -> dict:
    order = get_order_for(db, order_id, user)
    if order["status"] in ("shipped", "delivered"):
        raise ValidationError("Cannot cancel order that has been shipped or delivered")
    if order["status"] == "cancelled":
        raise ValidationError("Order is already cancelled")
    updated = _apply_status(db, order, "cancelled", reason or "Cancelled by customer", user.id,
                            {"cancellation_reason": reason})
    _restore_inventory(db, updated, user.id)
    log_event(db, "order_cancel", "order", user_id=user.id, resource_id=order["_id"],
              details={"order_number": order["order_number"], "reason": reason}, request=request)
    return get_order(db, order["_id"])


def update_payment_status(db, order_id: Any, payment_status: str, user_id: Any, request=None) -> dict:
    order = get_order(db, order_id)
    db["order"].update_one({"_id": order["_id"]},
                           {"$set": {"payment_status": payment_status, "updated_at": utcnow()}})
    log_event(db, "payment_status_update", "order", user_id=user_id, resource_id=order["_id"],
              details={"order_number": order["order_number"], "old_status": order["payment_status"],
                       "new_status": payment_status}, request=request)
    return get_order(db, order["_id"])


def reorder(db, order_id: Any, user) -> Dict[str, Any]:
    """Put the still-available lines of an earlier order back into the cart"""
    from services import cart

    order = get_order_for(db, order_id, user)
    added, skipped = [], []
    for item in order["items"]:
        try:
            cart.add_item(db, user.id, item["product"], item.get("variant_id"), item["quantity"])
            added.append(item["name"])
        except (NotFoundError, ValidationError, InsufficientStockError) as e:
            skipped.append({"name": item["name"], "reason": e.detail})
    return {"added": added, "skipped": skipped}


# --------------------- Queries ---------------------

def list_orders(db, filters: Dict[str, Any], page: int = 1, limit: int = 50):
    query: Dict[str, Any] = {}
    for key in ("status", "payment_status", "payment_method"):
        if filters.get(key):
            query[key] = filters[key]
    if filters.get("customer"):
        query["customer"] = to_object_id(filters["customer"], "customer id")
    rng = {}
    if filters.get("start_date"):
        rng["$gte"] = filters["start_date"]
    if filters.get("end_date"):
        rng["$lte"] = filters["end_date"]
    if rng:
        query["created_at"] = rng
    if filters.get("search"):
        pattern = {"$regex": filters["search"], "$options": "i"}
        query["$or"] = [
            {"order_number": pattern},
            {"customer_info.email": pattern},
            {"customer_info.first_name": pattern},
            {"customer_info.last_name": pattern},
        ]
    direction = 1 if filters.get("sort_order") == "asc" else -1
    return paginate(db["order"], query, page, limit, sort=[(filters.get("sort_by") or "created_at", direction)])


def _period(start_date: Optional[datetime], end_date: Optional[datetime]) -> Dict[str, datetime]:
    end_date = end_date or utcnow()
    start_date = start_date or end_date - timedelta(days=30)
    return {"$gte": start_date, "$lte": end_date}


def sales_stats(db, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> dict:
    rows = list(db["order"].aggregate([
        {"$match": {"created_at": _period(start_date, end_date), "status": {"$nin": ["cancelled", "refunded"]}}},
        {"$group": {
            "_id": None,
            "total_orders": {"$sum": 1},
            "total_revenue": {"$sum": "$total"},
            "average_order_value": {"$avg": "$total"},
        }},
    ]))
    items = db["order"].aggregate([
        {"$match": {"created_at": _period(start_date, end_date), "status": {"$nin": ["cancelled", "refunded"]}}},
        {"$unwind": "$items"},
        {"$group": {"_id": None, "total_items": {"$sum": "$items.quantity"}}},
    ])
    total_items = next(iter(items), {}).get("total_items", 0)
    if not rows:
        return {"total_orders": 0, "total_revenue": 0, "average_order_value": 0, "total_items": 0}
    row = rows[0]
    return {
        "total_orders": row["total_orders"],
        "total_revenue": order_model.money(row["total_revenue"]),
        "average_order_value": order_model.money(row["average_order_value"] or 0),
        "total_items": total_items,
    }


def return_stats(db, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> dict:
    orders = db["order"].find({"created_at": _period(start_date, end_date), "returns.0": {"$exists": True}})
    stats: Dict[str, int] = {}
    total = 0
    for order in orders:
        for ret in order["returns"]:
            stats[ret["status"]] = stats.get(ret["status"], 0) + 1
            total += 1
    return {"total_returns": total, "by_status": stats}


def order_stats(db, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> dict:
    counts = db["order"].aggregate([
        {"$match": {"created_at": _period(start_date, end_date)}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ])
    return {
        "sales": sales_stats(db, start_date, end_date),
        "returns": return_stats(db, start_date, end_date),
        "order_counts": {row["_id"]: row["count"] for row in counts},
    }


def revenue_by_day(db, days: int = 30) -> List[dict]:
    since = utcnow() - timedelta(days=days)
    daily: Dict[str, dict] = {}
    for order in db["order"].find({"created_at": {"$gte": since}, "payment_status": "paid"}):
        day = order["created_at"].strftime("%Y-%m-%d")
        entry = daily.setdefault(day, {"date": day, "revenue": 0.0, "orders": 0})
        entry["revenue"] = order_model.money(entry["revenue"] + order["total"])
        entry["orders"] += 1
    return [daily[day] for day in sorted(daily)]


def customer_order_summary(db, customer_id: Any) -> dict:
    orders = list(db["order"].find({"customer": to_object_id(customer_id, "customer id")}))
    spent = sum(o["total"] for o in orders if o["status"] not in ("cancelled", "refunded"))
    return {
        "total_orders": len(orders),
        "total_spent": order_model.money(spent),
        "average_order_value": order_model.money(spent / len(orders)) if orders else 0,
        "last_order_date": max((o["created_at"] for o in orders), default=None),
    }


# --------------------- Returns ---------------------

def create_return_request(db, order_id: Any, data: dict, user, request=None) -> dict:
    order = get_order_for(db, order_id, user)
    if order["status"] not in ("delivered", "shipped"):
        raise ValidationError("Order is not eligible for return")
    if not data.get("items"):
        raise ValidationError("Return must contain at least one item")

    items = []
    for line in data["items"]:
        ordered = next((i for i in order["items"]
                        if str(i["product"]) == str(line["product_id"])
                        and str(i.get("variant_id") or "") == str(line.get("variant_id") or "")), None)
        if ordered is None:
            raise ValidationError("Return item not found in order")
        if line["quantity"] > ordered["quantity"]:
            raise ValidationError("Return quantity exceeds order quantity")
        items.append({
            "product": ordered["product"],
            "variant_id": ordered.get("variant_id"),
            "name": ordered["name"],
            "quantity": line["quantity"],
            "reason": line.get("reason") or data.get("return_reason"),
            "condition": line.get("condition") or "unopened",
            "price": ordered["price"],
        })
    entry = order_model.build_return({**data, "items": items}, to_object_id(user.id))
    db["order"].update_one({"_id": order["_id"]}, {"$push": {"returns": entry}, "$set": {"updated_at": utcnow()}})
    log_event(db, "order_return_request", "order", user_id=user.id, resource_id=order["_id"],
              details={"order_number": order["order_number"], "return_id": entry["return_id"]}, request=request)
    return entry


def update_return_status(db, order_id: Any, return_id: Any, status: str, note: Optional[str],
                         user_id: Any, request=None) -> dict:
    order = get_order(db, order_id)
    entry = order_model.find_embedded(order, "returns", return_id)
    order_model.check_transition(order_model.RETURN_TRANSITIONS, entry["status"], status, "return")
    now = utcnow()
    updates = {"returns.$.status": status, "updated_at": now}
    if status in order_model.RETURN_TIMESTAMPS:
        updates[f"returns.$.{order_model.RETURN_TIMESTAMPS[status]}"] = now
    updated = update_and_fetch(
        db["order"],
        {"_id": order["_id"], "returns": {"$elemMatch": {"_id": entry["_id"], "status": entry["status"]}}},
        {"$push": {"returns.$.status_history": order_model.history_entry(status, note, to_object_id(user_id))},
         "$set": updates},
    )
    if updated is None:
        raise ConflictError("Return status was changed by another request, please retry")

    if status == "approved":
        for item in entry["items"]:
            inventory.update_stock(db, item["product"], item.get("variant_id"), item["quantity"],
                                   "return", entry["return_id"], user_id)
    log_event(db, "order_return_status_update", "order", user_id=user_id, resource_id=order["_id"],
              details={"order_number": order["order_number"], "return_id": entry["return_id"],
                       "old_status": entry["status"], "new_status": status, "note": note}, request=request)
    return order_model.find_embedded(updated, "returns", entry["_id"])


# --------------------- Refunds ---------------------

def create_refund(db, order_id: Any, data: dict, user_id: Any, request=None) -> dict:
    order = get_order(db, order_id)
    refundable = order_model.money(order["total"] - order_model.refunded_amount(order))
    if data["amount"] <= 0:
        raise ValidationError("Refund amount must be positive")
    if data["amount"] > refundable:
        raise ValidationError("Refund amount cannot exceed order total")
    entry = order_model.build_refund(data, to_object_id(user_id))
    db["order"].update_one({"_id": order["_id"]}, {"$push": {"refunds": entry}, "$set": {"updated_at": utcnow()}})
    log_event(db, "refund_create", "order", user_id=user_id, resource_id=order["_id"],
              details={"order_number": order["order_number"], "refund_id": entry["refund_id"],
                       "amount": entry["amount"]}, request=request)
    return entry


def _set_refund_status(db, order: dict, refund: dict, status: str, note: Optional[str], user_id: Any,
                       extra: Optional[dict] = None) -> dict:
    order_model.check_transition(order_model.REFUND_TRANSITIONS, refund["status"], status, "refund")
    now = utcnow()
    updates = {"refunds.$.status": status, "updated_at": now}
    if status in order_model.REFUND_TIMESTAMPS:
        updates[f"refunds.$.{order_model.REFUND_TIMESTAMPS[status]}"] = now
    if status == "approved":
        updates["refunds.$.approved_by"] = to_object_id(user_id)
    if status in ("processing", "completed"):
        updates["refunds.$.processed_by"] = to_object_id(user_id)
    for key, value in (extra or {}).items():
        updates[f"refunds.$.{key}"] = value
    updated = update_and_fetch(
        db["order"],
        {"_id": order["_id"], "refunds": {"$elemMatch": {"_id": refund["_id"], "status": refund["status"]}}},
        {"$push": {"refunds.$.status_history": order_model.history_entry(status, note, to_object_id(user_id))},
         "$set": updates},
    )
    if updated is None:
        raise ConflictError("Refund status was changed by another request, please retry")
    return updated


def update_refund_status(db, order_id: Any, refund_id: Any, status: str, note: Optional[str],
                         user_id: Any, request=None) -> dict:
    order = get_order(db, order_id)
    refund = order_model.find_embedded(order, "refunds", refund_id)
    updated = _set_refund_status(db, order, refund, status, note, user_id)
    log_event(db, "refund_status_update", "order", user_id=user_id, resource_id=order["_id"],
              details={"refund_id": refund["refund_id"], "old_status": refund["status"], "new_status": status},
              request=request)
    return order_model.find_embedded(updated, "refunds", refund["_id"])


def process_refund(db, order_id: Any, refund_id: Any, user_id: Any, request=None) -> dict:
    """Send an approved refund to the payment gateway and record the outcome"""
    from services import payments

    order = get_order(db, order_id)
    refund = order_model.find_embedded(order, "refunds", refund_id)
    if refund["status"] != "approved":
        raise ValidationError("Refund must be approved before processing")

    order = _set_refund_status(db, order, refund, "processing", "Refund processing started", user_id)
    refund = order_model.find_embedded(order, "refunds", refund["_id"])
    try:
        gateway = payments.refund_payment(order, refund["amount"], refund["reason"])
    except PaymentError as e:
        order = _set_refund_status(db, order, refund, "failed", e.detail, user_id,
                                   {"failure_reason": e.detail})
        log_event(db, "refund_process", "payment", user_id=user_id, resource_id=order["_id"],
                  details={"refund_id": refund["refund_id"]}, status="failure", error_message=e.detail,
                  request=request)
        return order_model.find_embedded(order, "refunds", refund["_id"])

    order = _set_refund_status(db, order, refund, "completed", "Refund processed successfully", user_id,
                               {"gateway_refund_id": gateway["refund_id"], "gateway_response": gateway})
    refunded = order_model.completed_refund_amount(order)
    payment_status = "refunded" if refunded >= order["total"] else "partially_refunded"
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_status": payment_status}})
    logger.info("Refund %s of %.2f completed for order %s", refund["refund_id"], refund["amount"],
                order["order_number"])
    log_event(db, "refund_process", "payment", user_id=user_id, resource_id=order["_id"],
              details={"refund_id": refund["refund_id"], "amount": refund["amount"],
                       "gateway_refund_id": gateway["refund_id"]}, request=request)
    return order_model.find_embedded(get_order(db, order["_id"]), "refunds", refund["_id"])
