"""
Product document helpers.

Stock bookkeeping has two shapes. A product with variants keeps its counters on
each variant (``stock``, ``reserved_stock``, ``available_stock``); a product
without variants keeps them on ``inventory`` (``quantity``,
``reserved_quantity``, ``available_quantity``). When variants exist they are
authoritative and the product-level counters are not used for selling.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import as_utc, utcnow
from exceptions import NotFoundError, ValidationError
from schemas import Product, Variant

VARIANT_SIZES = {
    "XS", "S", "M", "L", "XL", "XXL", "XXXL",
    "28", "30", "32", "34", "36", "38", "40", "42", "44", "46", "48", "50",
    "6", "7", "8", "9", "10", "11", "12", "13", "14", "15", "ONE_SIZE",
}


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9 -]", "", text.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def build_variant(data: dict) -> dict:
    variant = Variant(**data).model_dump()
    variant["size"] = variant["size"].upper()
    if variant["size"] not in VARIANT_SIZES:
        raise ValidationError(f"Unsupported size '{variant['size']}'")
    variant["sku"] = variant["sku"].strip().upper()
    variant["reserved_stock"] = 0
    variant["available_stock"] = variant["stock"]
    variant["low_stock_alert"] = variant["stock"] <= variant["reorder_point"]
    variant["last_stock_update"] = utcnow()
    variant["_id"] = ObjectId()
    return variant


def build_product(data: dict, user_id: Optional[ObjectId] = None) -> dict:
    """Validate a product payload and fill in derived bookkeeping fields"""
    data = dict(data)
    variants = data.pop("variants", None) or []
    product = Product(**data).model_dump()
    product["sku"] = product["sku"].strip().upper()
    product["tags"] = [t.strip().lower() for t in product["tags"]]
    product["variants"] = [build_variant(v) for v in variants]

    inventory = product["inventory"]
    inventory["reserved_quantity"] = 0
    inventory["available_quantity"] = inventory["quantity"]
    inventory["low_stock_alert"] = inventory["quantity"] <= inventory["reorder_point"]
    inventory["last_stock_update"] = utcnow()

    if not product["seo"].get("slug"):
        product["seo"]["slug"] = slugify(product["name"])
    if product["status"] == "active":
        product["published_at"] = utcnow()
    product["created_by"] = user_id
    product["updated_by"] = user_id
    return product


def has_variants(product: dict) -> bool:
    return bool(product.get("variants"))


def find_variant(product: dict, variant_id: Any) -> dict:
    for variant in product.get("variants", []):
        if str(variant["_id"]) == str(variant_id):
            return variant
    raise NotFoundError("Variant not found")


def total_stock(product: dict) -> int:
    if has_variants(product):
        return sum(v.get("stock", 0) for v in product["variants"])
    return product.get("inventory", {}).get("quantity", 0)


def available_stock(product: dict, variant_id: Any = None) -> int:
    if variant_id:
        return find_variant(product, variant_id).get("available_stock", 0)
    if has_variants(product):
        return sum(v.get("available_stock", 0) for v in product["variants"] if v.get("status") == "active")
    return product.get("inventory", {}).get("available_quantity", 0)


def is_available(product: dict) -> bool:
    if product.get("status") != "active":
        return False
    inventory = product.get("inventory", {})
    if not inventory.get("track_quantity", True):
        return True
    if has_variants(product):
        return any(v.get("stock", 0) > 0 for v in product["variants"])
    return inventory.get("quantity", 0) > 0 or inventory.get("continue_selling_when_out_of_stock", False)


def is_low_stock(product: dict) -> bool:
    threshold = product.get("inventory", {}).get("low_stock_threshold", 10)
    if has_variants(product):
        return any(0 < v.get("stock", 0) <= threshold for v in product["variants"])
    return product.get("inventory", {}).get("quantity", 0) <= threshold


def is_on_sale(product: dict, now: Optional[datetime] = None) -> bool:
    sale_price = product.get("sale_price")
    if not product.get("on_sale") or not sale_price:
        return False
    now = now or utcnow()
    start = as_utc(product.get("sale_start_date"))
    end = as_utc(product.get("sale_end_date"))
    if start and now < start:
        return False
    if end and now > end:
        return False
    return sale_price < product["price"]


def effective_price(product: dict, variant_id: Any = None) -> float:
    if variant_id:
        variant = find_variant(product, variant_id)
        if variant.get("price") is not None:
            return variant["price"]
    return product["sale_price"] if is_on_sale(product) else product["price"]


def discount_percentage(product: dict) -> int:
    if not is_on_sale(product):
        return 0
    return round((product["price"] - product["sale_price"]) / product["price"] * 100)


def with_virtuals(product: dict) -> dict:
    product = dict(product)
    product["total_stock"] = total_stock(product)
    product["is_available"] = is_available(product)
    product["is_low_stock"] = is_low_stock(product)
    product["is_on_sale"] = is_on_sale(product)
    product["effective_price"] = effective_price(product)
    product["discount_percentage"] = discount_percentage(product)
    return product


def check_stock_availability(product: dict, variant_id: Any, quantity: int) -> Dict[str, Any]:
    if variant_id:
        try:
            variant = find_variant(product, variant_id)
        except NotFoundError:
            return {"available": False, "reason": "Variant not found"}
        if variant.get("status") != "active":
            return {"available": False, "reason": "Variant is not active"}
        stock = variant.get("available_stock", 0)
    else:
        if product.get("status") != "active":
            return {"available": False, "reason": "Product is not active"}
        if has_variants(product):
            return {"available": False, "reason": "Variant selection is required"}
        inventory = product.get("inventory", {})
        if not inventory.get("track_quantity", True) or inventory.get("continue_selling_when_out_of_stock"):
            return {"available": True, "stock": inventory.get("available_quantity", 0)}
        stock = inventory.get("available_quantity", 0)

    if stock >= quantity:
        return {"available": True, "stock": stock}
    return {
        "available": False,
        "reason": "Insufficient stock",
        "available_stock": stock,
        "requested_quantity": quantity,
    }


def low_stock_variants(product: dict) -> List[dict]:
    return [
        v for v in product.get("variants", [])
        if 0 < v.get("stock", 0) <= v.get("reorder_point", 5)
    ]


def reorder_suggestions(product: dict) -> List[dict]:
    suggestions = []
    if has_variants(product):
        for variant in product["variants"]:
            if variant.get("stock", 0) <= variant.get("reorder_point", 5):
                suggestions.append({
                    "variant": {
                        "id": str(variant["_id"]),
                        "size": variant["size"],
                        "color": variant["color"],
                        "sku": variant["sku"],
                    },
                    "current_stock": variant["stock"],
                    "reorder_point": variant["reorder_point"],
                    "suggested_quantity": variant["reorder_quantity"],
                    "urgency": "critical" if variant["stock"] == 0 else "low",
                })
    else:
        inventory = product.get("inventory", {})
        if inventory.get("quantity", 0) <= inventory.get("reorder_point", 5):
            suggestions.append({
                "product": product["name"],
                "sku": product["sku"],
                "current_stock": inventory.get("quantity", 0),
                "reorder_point": inventory.get("reorder_point", 5),
                "suggested_quantity": inventory.get("reorder_quantity", 10),
                "urgency": "critical" if inventory.get("quantity", 0) == 0 else "low",
            })
    return suggestions
