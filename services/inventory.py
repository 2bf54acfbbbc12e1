"""
Inventory service.

Every stock mutation is a single conditional ``update_one``: the guard (for
example ``available_stock >= quantity``) and the counter changes are evaluated
together by MongoDB, so concurrent requests cannot overdraw a product. When
the guard does not match, nothing is written and ``InsufficientStockError`` is
raised.

Counters always satisfy ``available = stock - reserved``.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import as_utc, paginate, to_object_id, update_and_fetch, utcnow
from exceptions import InsufficientStockError, NotFoundError, ValidationError
from models import product as product_model
from services.audit import log_event

logger = logging.getLogger(__name__)

HISTORY_TYPES = ("in", "out", "adjustment", "reserved", "released")

_VARIANT_FIELDS = {"stock": "stock", "reserved": "reserved_stock", "available": "available_stock"}
_INVENTORY_FIELDS = {"stock": "quantity", "reserved": "reserved_quantity", "available": "available_quantity"}


def get_product(db, product_id: Any) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def _resolve_variant(product: dict, variant_id: Any) -> Optional[dict]:
    if variant_id:
        return product_model.find_variant(product, variant_id)
    if product_model.has_variants(product):
        raise ValidationError("A variant must be selected for products with variants")
    return None


def _tracks_quantity(product: dict, variant: Optional[dict]) -> bool:
    inventory = product.get("inventory", {})
    if not inventory.get("track_quantity", True):
        return False
    if variant is None and inventory.get("continue_selling_when_out_of_stock"):
        return False
    return True


def _mutate(db, product: dict, variant: Optional[dict], guard: Dict[str, int],
            inc: Dict[str, int], history: dict, extra_inc: Optional[dict] = None,
            extra_set: Optional[dict] = None) -> Optional[dict]:
    """Apply counter increments when every ``guard`` counter is >= its bound.

    Returns the updated product, or None when the guard did not match.
    """
    now = utcnow()
    if variant is not None:
        fields = _VARIANT_FIELDS
        prefix = "variants.$."
        elem = {"_id": variant["_id"]}
        elem.update({fields[k]: {"$gte": bound} for k, bound in guard.items()})
        query = {"_id": product["_id"], "variants": {"$elemMatch": elem}}
    else:
        fields = _INVENTORY_FIELDS
        prefix = "inventory."
        query = {"_id": product["_id"]}
        query.update({prefix + fields[k]: {"$gte": bound} for k, bound in guard.items()})

    increments = {prefix + fields[k]: v for k, v in inc.items() if v}
    increments.update(extra_inc or {})
    update = {
        "$set": {prefix + "last_stock_update": now, "updated_at": now, **(extra_set or {})},
        "$inc": increments,
        "$push": {"inventory.stock_history": {"_id": ObjectId(), "date": now, **history}},
    }
    return update_and_fetch(db["product"], query, update)


def _refresh_low_stock_flag(db, product: dict, variant_id: Any) -> dict:
    """Toggle the low-stock flag and record an alert when crossing the reorder point"""
    if variant_id:
        current = product_model.find_variant(product, variant_id)
        stock = current["stock"]
        query = {"_id": product["_id"], "variants": {"$elemMatch": {"_id": current["_id"]}}}
        flag_path = "variants.$.low_stock_alert"
        alert_variant = {"size": current["size"], "color": current["color"], "sku": current["sku"]}
    else:
        current = product["inventory"]
        stock = current["quantity"]
        query = {"_id": product["_id"]}
        flag_path = "inventory.low_stock_alert"
        alert_variant = None

    low = stock <= current.get("reorder_point", 5)
    if low and not current.get("low_stock_alert"):
        alert = {
            "_id": ObjectId(),
            "date": utcnow(),
            "variant": alert_variant,
            "current_stock": stock,
            "threshold": current.get("reorder_point", 5),
            "resolved": False,
        }
        product = update_and_fetch(
            db["product"], query, {"$set": {flag_path: True}, "$push": {"inventory.low_stock_alerts": alert}},
        ) or product
        logger.warning("Low stock for product %s (%s units)", product["sku"], stock)
    elif not low and current.get("low_stock_alert"):
        product = update_and_fetch(db["product"], query, {"$set": {flag_path: False}}) or product
    return product


def _counter(product: dict, variant_id: Any, key: str) -> int:
    if variant_id:
        return product_model.find_variant(product, variant_id).get(_VARIANT_FIELDS[key], 0)
    return product["inventory"].get(_INVENTORY_FIELDS[key], 0)


# --------------------- Mutations ---------------------

def update_stock(db, product_id: Any, variant_id: Any, quantity: int, reason: str = "manual",
                 reference: Optional[str] = None, user_id: Any = None, request=None) -> dict:
    """Add (positive) or remove (negative) physical stock.

    Removal never takes stock below zero and never below what is reserved.
    """
    if not quantity:
        raise ValidationError("Quantity must be non-zero")
    product = get_product(db, product_id)
    variant = _resolve_variant(product, variant_id)
    history = {
        "type": "in" if quantity > 0 else "out",
        "quantity": abs(quantity),
        "reason": reason,
        "reference": reference,
        "updated_by": user_id,
    }
    guard = {} if quantity > 0 else {"available": -quantity}
    updated = _mutate(db, product, variant, guard, {"stock": quantity, "available": quantity}, history)
    if updated is None:
        raise InsufficientStockError(available=_counter(get_product(db, product_id), variant_id, "available"),
                                     requested=-quantity)
    updated = _refresh_low_stock_flag(db, updated, variant_id)

    new_stock = _counter(updated, variant_id, "stock")
    logger.info("Stock of %s changed by %s to %s (%s)", updated["sku"], quantity, new_stock, reason)
    log_event(db, "inventory_update", "inventory", user_id=user_id, resource_id=updated["_id"],
              details={"product_id": str(updated["_id"]), "variant_id": str(variant_id) if variant_id else None,
                       "quantity": quantity, "reason": reason, "reference": reference, "new_stock": new_stock},
              request=request)
    return updated


def reserve_stock(db, product_id: Any, variant_id: Any, quantity: int, reference: Optional[str] = None,
                  user_id: Any = None) -> dict:
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    product = get_product(db, product_id)
    variant = _resolve_variant(product, variant_id)
    if not _tracks_quantity(product, variant):
        return product
    history = {"type": "reserved", "quantity": quantity, "reason": "Order reservation", "reference": reference}
    updated = _mutate(db, product, variant, {"available": quantity},
                      {"reserved": quantity, "available": -quantity}, history)
    if updated is None:
        raise InsufficientStockError(
            f"Insufficient available stock for {product['name']}",
            available=_counter(get_product(db, product_id), variant_id, "available"),
            requested=quantity,
        )
    log_event(db, "inventory_reserve", "inventory", user_id=user_id, resource_id=updated["_id"],
              details={"product_id": str(updated["_id"]), "variant_id": str(variant_id) if variant_id else None,
                       "quantity": quantity, "reference": reference})
    return updated


def release_reserved_stock(db, product_id: Any, variant_id: Any, quantity: int,
                           reference: Optional[str] = None, user_id: Any = None) -> dict:
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    product = get_product(db, product_id)
    variant = _resolve_variant(product, variant_id)
    if not _tracks_quantity(product, variant):
        return product
    history = {"type": "released", "quantity": quantity, "reason": "Order cancellation", "reference": reference}
    updated = _mutate(db, product, variant, {"reserved": quantity},
                      {"reserved": -quantity, "available": quantity}, history)
    if updated is None:
        raise InsufficientStockError("Insufficient reserved stock")
    log_event(db, "inventory_release", "inventory", user_id=user_id, resource_id=updated["_id"],
              details={"product_id": str(updated["_id"]), "variant_id": str(variant_id) if variant_id else None,
                       "quantity": quantity, "reference": reference})
    return updated


def commit_reserved_stock(db, product_id: Any, variant_id: Any, quantity: int,
                          reference: Optional[str] = None, user_id: Any = None) -> dict:
    """Turn a reservation into a sale: stock and reserved both drop, available is unchanged"""
    product = get_product(db, product_id)
    variant = _resolve_variant(product, variant_id)
    if not _tracks_quantity(product, variant):
        db["product"].update_one({"_id": product["_id"]},
                                 {"$inc": {"sales_count": quantity}, "$set": {"last_order_date": utcnow()}})
        return product
    history = {"type": "out", "quantity": quantity, "reason": "order_fulfilled", "reference": reference,
               "updated_by": user_id}
    updated = _mutate(db, product, variant, {"reserved": quantity},
                      {"stock": -quantity, "reserved": -quantity}, history,
                      extra_inc={"sales_count": quantity}, extra_set={"last_order_date": utcnow()})
    if updated is None:
        raise InsufficientStockError("Insufficient reserved stock")
    updated = _refresh_low_stock_flag(db, updated, variant_id)
    log_event(db, "inventory_update", "inventory", user_id=user_id, resource_id=updated["_id"],
              details={"product_id": str(updated["_id"]), "variant_id": str(variant_id) if variant_id else None,
                       "quantity": -quantity, "reason": "order_fulfilled", "reference": reference})
    return updated


def update_variant_status(db, product_id: Any, variant_id: Any, status: str, user_id: Any = None) -> dict:
    product = get_product(db, product_id)
    variant = product_model.find_variant(product, variant_id)
    updates = {"variants.$.status": status, "updated_at": utcnow(), "updated_by": user_id}
    if status == "out_of_stock":
        updates["variants.$.available_stock"] = 0
    elif variant.get("status") == "out_of_stock":
        updates["variants.$.available_stock"] = max(0, variant["stock"] - variant["reserved_stock"])
    return update_and_fetch(
        db["product"],
        {"_id": product["_id"], "variants": {"$elemMatch": {"_id": variant["_id"]}}},
        {"$set": updates},
    )


def update_reorder_settings(db, product_id: Any, variant_id: Any, settings: Dict[str, Optional[int]]) -> dict:
    product = get_product(db, product_id)
    updates = {}
    if variant_id:
        variant = product_model.find_variant(product, variant_id)
        query = {"_id": product["_id"], "variants": {"$elemMatch": {"_id": variant["_id"]}}}
        prefix = "variants.$."
    else:
        query = {"_id": product["_id"]}
        prefix = "inventory."
    for key in ("reorder_point", "reorder_quantity", "low_stock_threshold"):
        if settings.get(key) is not None:
            if key == "low_stock_threshold" and variant_id:
                continue
            updates[prefix + key] = settings[key]
    if not updates:
        raise ValidationError("No reorder settings provided")
    updates["updated_at"] = utcnow()
    updated = update_and_fetch(db["product"], query, {"$set": updates})
    return _refresh_low_stock_flag(db, updated, variant_id)


def resolve_low_stock_alert(db, product_id: Any, alert_id: Any, user_id: Any) -> dict:
    product = get_product(db, product_id)
    alert_oid = to_object_id(alert_id, "alert id")
    updated = update_and_fetch(
        db["product"],
        {"_id": product["_id"], "inventory.low_stock_alerts": {"$elemMatch": {"_id": alert_oid}}},
        {"$set": {
            "inventory.low_stock_alerts.$.resolved": True,
            "inventory.low_stock_alerts.$.resolved_by": user_id,
            "inventory.low_stock_alerts.$.resolved_at": utcnow(),
        }},
    )
    if updated is None:
        raise NotFoundError("Alert not found")
    return updated


def bulk_stock_update(db, updates: List[dict], user_id: Any = None) -> Dict[str, list]:
    results, errors = [], []
    for row in updates:
        try:
            product = update_stock(db, row["product_id"], row.get("variant_id"), row["quantity"],
                                   row.get("reason") or "bulk_update", row.get("reference"), user_id)
            results.append({
                "product_id": str(product["_id"]),
                "variant_id": row.get("variant_id"),
                "success": True,
                "new_stock": _counter(product, row.get("variant_id"), "stock"),
            })
        except (NotFoundError, ValidationError, InsufficientStockError) as e:
            errors.append({
                "product_id": row.get("product_id"),
                "variant_id": row.get("variant_id"),
                "success": False,
                "error": e.detail,
            })
    return {"results": results, "errors": errors}


# --------------------- Queries ---------------------

def check_stock_availability(db, product_id: Any, variant_id: Any, quantity: int) -> dict:
    return product_model.check_stock_availability(get_product(db, product_id), variant_id, quantity)


def _alert_row(product: dict, category_names: Dict[str, str], current: int, reorder_point: int,
               suggested: int, variant: Optional[dict] = None) -> dict:
    row = {
        "product_id": str(product["_id"]),
        "product_name": product["name"],
        "sku": product["sku"],
        "category": category_names.get(str(product.get("category"))),
        "current_stock": current,
        "reorder_point": reorder_point,
        "suggested_quantity": suggested,
        "urgency": "critical" if current == 0 else "low",
    }
    if variant is not None:
        row["variant"] = {"id": str(variant["_id"]), "size": variant["size"],
                          "color": variant["color"], "sku": variant["sku"]}
    return row


def _category_names(db) -> Dict[str, str]:
    return {str(c["_id"]): c["name"] for c in db["category"].find({}, {"name": 1})}


def get_low_stock_alerts(db) -> List[dict]:
    names = _category_names(db)
    alerts = []
    for product in db["product"].find({"status": {"$ne": "archived"}}):
        if product_model.has_variants(product):
            for variant in product["variants"]:
                if variant.get("low_stock_alert") and variant.get("stock", 0) > 0:
                    alerts.append(_alert_row(product, names, variant["stock"], variant["reorder_point"],
                                             variant["reorder_quantity"], variant))
        else:
            inventory = product.get("inventory", {})
            quantity = inventory.get("quantity", 0)
            if 0 < quantity <= inventory.get("low_stock_threshold", 10):
                alerts.append(_alert_row(product, names, quantity, inventory.get("low_stock_threshold", 10),
                                         inventory.get("reorder_quantity", 10)))
    return alerts


def get_reorder_suggestions(db) -> List[dict]:
    names = _category_names(db)
    suggestions = []
    for product in db["product"].find({"status": {"$ne": "archived"}}):
        product_suggestions = product_model.reorder_suggestions(product)
        if product_suggestions:
            suggestions.append({
                "product_id": str(product["_id"]),
                "product_name": product["name"],
                "sku": product["sku"],
                "category": names.get(str(product.get("category"))),
                "suggestions": product_suggestions,
            })
    return suggestions


def get_inventory_report(db, filters: Dict[str, Any], page: int = 1, limit: int = 50):
    query: Dict[str, Any] = {}
    if filters.get("category"):
        query["category"] = to_object_id(filters["category"], "category id")
    if filters.get("status"):
        query["status"] = filters["status"]
    if filters.get("out_of_stock"):
        query["$or"] = [{"variants.stock": 0}, {"variants": {"$size": 0}, "inventory.quantity": 0}]
    if filters.get("low_stock"):
        # low stock compares against each product's own threshold
        low = db["product"].find(query, {"inventory": 1, "variants": 1})
        query["_id"] = {"$in": [p["_id"] for p in low if product_model.is_low_stock(p)]}
    sort_by = filters.get("sort_by") or "name"
    direction = -1 if filters.get("sort_order") == "desc" else 1
    products, pagination = paginate(db["product"], query, page, limit, sort=[(sort_by, direction)])
    names = _category_names(db)

    report = []
    for product in products:
        inventory = product.get("inventory", {})
        total = product_model.total_stock(product)
        report.append({
            "product_id": str(product["_id"]),
            "name": product["name"],
            "sku": product["sku"],
            "category": names.get(str(product.get("category"))),
            "status": product["status"],
            "total_stock": total,
            "available_stock": product_model.available_stock(product),
            "reserved_stock": (sum(v["reserved_stock"] for v in product["variants"])
                               if product_model.has_variants(product) else inventory.get("reserved_quantity", 0)),
            "low_stock": product_model.is_low_stock(product),
            "out_of_stock": total == 0,
            "last_stock_update": inventory.get("last_stock_update"),
            "variants": [{
                "id": str(v["_id"]),
                "size": v["size"],
                "color": v["color"],
                "sku": v["sku"],
                "stock": v["stock"],
                "available_stock": v["available_stock"],
                "reserved_stock": v["reserved_stock"],
                "status": v["status"],
                "low_stock": v.get("low_stock_alert", False),
                "reorder_point": v["reorder_point"],
                "last_stock_update": v.get("last_stock_update"),
            } for v in product.get("variants", [])],
        })
    return report, pagination


def get_stock_history(db, product_id: Any, history_type: Optional[str] = None,
                      start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                      page: int = 1, limit: int = 50):
    product = get_product(db, product_id)
    history = product.get("inventory", {}).get("stock_history", [])
    if history_type:
        history = [h for h in history if h["type"] == history_type]
    if start_date:
        history = [h for h in history if as_utc(h["date"]) >= start_date]
    if end_date:
        history = [h for h in history if as_utc(h["date"]) <= end_date]
    history = sorted(history, key=lambda h: as_utc(h["date"]), reverse=True)

    page, limit = max(1, page), max(1, limit)
    start = (page - 1) * limit
    return history[start:start + limit], {
        "page": page,
        "limit": limit,
        "total": len(history),
        "pages": -(-len(history) // limit),
    }


def dashboard_stats(db) -> dict:
    products = list(db["product"].find({"status": {"$ne": "archived"}}))
    total_units = sum(product_model.total_stock(p) for p in products)
    value = sum(product_model.total_stock(p) * (p.get("cost_price") or p["price"]) for p in products)
    return {
        "total_products": len(products),
        "total_units": total_units,
        "inventory_value": round(value, 2),
        "out_of_stock": sum(1 for p in products if product_model.total_stock(p) == 0),
        "low_stock": sum(1 for p in products if product_model.is_low_stock(p)),
        "reorder_needed": sum(1 for p in products if product_model.reorder_suggestions(p)),
    }
