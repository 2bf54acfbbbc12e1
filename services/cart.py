"""Shopping cart kept on the user document (``user.cart``)."""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId

from config import FREE_SHIPPING_THRESHOLD
from database import to_object_id, utcnow
from exceptions import InsufficientStockError, NotFoundError, ValidationError
from models import order as order_model
from models import product as product_model
from services import cms

logger = logging.getLogger(__name__)


def _user(db, user_id: Any) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise NotFoundError("User not found")
    return user


def _same_line(item: dict, product_id: ObjectId, variant_id: Optional[ObjectId]) -> bool:
    return item["product"] == product_id and str(item.get("variant_id") or "") == str(variant_id or "")


def _check(product: dict, variant_id: Any, quantity: int) -> None:
    if product.get("status") != "active":
        raise ValidationError("Product is not available")
    check = product_model.check_stock_availability(product, variant_id, quantity)
    if not check["available"]:
        if check["reason"] == "Insufficient stock":
            raise InsufficientStockError(available=check["available_stock"], requested=quantity)
        raise ValidationError(check["reason"])


def get_cart(db, user_id: Any) -> Dict[str, Any]:
    """Cart lines priced at today's prices; lines for unavailable products are dropped"""
    user = _user(db, user_id)
    ids = [item["product"] for item in user.get("cart", [])]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}

    lines, kept = [], []
    for item in user.get("cart", []):
        product = products.get(item["product"])
        if not product or product.get("status") != "active":
            continue
        try:
            price = product_model.effective_price(product, item.get("variant_id"))
            variant = product_model.find_variant(product, item["variant_id"]) if item.get("variant_id") else None
        except NotFoundError:
            continue
        kept.append(item)
        images = product.get("images") or []
        lines.append({
            "id": str(item["_id"]),
            "product_id": str(product["_id"]),
            "variant_id": str(item["variant_id"]) if item.get("variant_id") else None,
            "name": product["name"],
            "image": images[0]["url"] if images else None,
            "variant": {"size": variant["size"], "color": variant["color"]} if variant else None,
            "price": price,
            "quantity": item["quantity"],
            "total_price": order_model.money(price * item["quantity"]),
            "available_stock": product_model.available_stock(product, item.get("variant_id")),
        })

    if len(kept) != len(user.get("cart", [])):
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"cart": kept}})

    subtotal = order_model.money(sum(line["total_price"] for line in lines))
    shipping = order_model.calculate_shipping("standard", subtotal) if lines else 0.0
    return {
        "items": lines,
        "summary": {
            "item_count": sum(line["quantity"] for line in lines),
            "subtotal": subtotal,
            "shipping": shipping,
            "total": order_model.money(subtotal + shipping),
            "free_shipping_threshold": FREE_SHIPPING_THRESHOLD,
            "amount_for_free_shipping": order_model.money(max(0.0, FREE_SHIPPING_THRESHOLD - subtotal)),
        },
    }


def add_item(db, user_id: Any, product_id: Any, variant_id: Any = None, quantity: int = 1) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    user = _user(db, user_id)
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")
    variant_oid = to_object_id(variant_id, "variant id") if variant_id else None

    cart = user.get("cart", [])
    existing = next((i for i in cart if _same_line(i, product["_id"], variant_oid)), None)
    wanted = quantity + (existing["quantity"] if existing else 0)
    _check(product, variant_oid, wanted)

    if existing:
        db["user"].update_one(
            {"_id": user["_id"], "cart": {"$elemMatch": {"_id": existing["_id"]}}},
            {"$set": {"cart.$.quantity": wanted, "cart.$.added_at": utcnow()}},
        )
    else:
        db["user"].update_one({"_id": user["_id"]}, {"$push": {"cart": {
            "_id": ObjectId(),
            "product": product["_id"],
            "variant_id": variant_oid,
            "quantity": quantity,
            "added_at": utcnow(),
        }}})
    return get_cart(db, user_id)


def update_item(db, user_id: Any, item_id: Any, quantity: int) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    user = _user(db, user_id)
    item_oid = to_object_id(item_id, "cart item id")
    item = next((i for i in user.get("cart", []) if i["_id"] == item_oid), None)
    if item is None:
        raise NotFoundError("Item not found in cart")
    product = db["product"].find_one({"_id": item["product"]})
    if not product:
        raise NotFoundError("Product not found")
    _check(product, item.get("variant_id"), quantity)
    db["user"].update_one({"_id": user["_id"], "cart": {"$elemMatch": {"_id": item_oid}}},
                          {"$set": {"cart.$.quantity": quantity}})
    return get_cart(db, user_id)


def remove_item(db, user_id: Any, item_id: Any) -> Dict[str, Any]:
    user = _user(db, user_id)
    result = db["user"].update_one({"_id": user["_id"]},
                                   {"$pull": {"cart": {"_id": to_object_id(item_id, "cart item id")}}})
    if not result.modified_count:
        raise NotFoundError("Item not found in cart")
    return get_cart(db, user_id)


def clear(db, user_id: Any) -> None:
    db["user"].update_one({"_id": _user(db, user_id)["_id"]}, {"$set": {"cart": []}})


def count(db, user_id: Any) -> int:
    return sum(item["quantity"] for item in _user(db, user_id).get("cart", []))


def apply_coupon(db, user_id: Any, code: str) -> Dict[str, Any]:
    """Price a coupon against the current cart; the code is redeemed at checkout"""
    if not code:
        raise ValidationError("Coupon code is required")
    cart = get_cart(db, user_id)
    if not cart["items"]:
        raise ValidationError("Cart is empty")
    subtotal = cart["summary"]["subtotal"]
    quote = cms.quote_promotion(db, code, subtotal)
    shipping = 0.0 if quote["free_shipping"] else cart["summary"]["shipping"]
    return {
        "coupon": {"code": quote["code"], "type": quote.get("type"), "value": quote.get("value"),
                   "discount_amount": quote["amount"], "free_shipping": quote["free_shipping"]},
        "cart_total": {
            "subtotal": subtotal,
            "discount_amount": quote["amount"],
            "shipping": shipping,
            "final_amount": order_model.money(subtotal - quote["amount"] + shipping),
        },
    }


def validate(db, user_id: Any) -> Dict[str, Any]:
    """Re-check every cart line against current stock and prices"""
    user = _user(db, user_id)
    issues: List[dict] = []
    for item in user.get("cart", []):
        product = db["product"].find_one({"_id": item["product"]})
        line = {"item_id": str(item["_id"]), "product_id": str(item["product"])}
        if not product or product.get("status") != "active":
            issues.append({**line, "issue": "Product is no longer available"})
            continue
        check = product_model.check_stock_availability(product, item.get("variant_id"), item["quantity"])
        if not check["available"]:
            issues.append({**line, "issue": check["reason"], "available_stock": check.get("available_stock", 0)})
    cart = get_cart(db, user_id)
    return {"valid": not issues, "issues": issues, "cart": cart}
