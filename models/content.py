from datetime import datetime
from typing import Optional

from database import as_utc, utcnow
from models.product import slugify


def _in_window(section: dict, now: datetime) -> bool:
    start = as_utc(section.get("start_date"))
    end = as_utc(section.get("end_date"))
    if start and now < start:
        return False
    if end and now > end:
        return False
    return True


def is_active_by_date(content: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    section = content.get(content["type"])
    if content["type"] in ("banner", "promotion") and section:
        return _in_window(section, now) and section.get("is_active", True)
    return content.get("status") == "published"


def is_promotion_valid(content: dict, now: Optional[datetime] = None) -> bool:
    if content.get("type") != "promotion" or content.get("status") != "published":
        return False
    promotion = content.get("promotion") or {}
    if not promotion.get("is_active", True) or not _in_window(promotion, now or utcnow()):
        return False
    limit = promotion.get("usage_limit")
    if limit and promotion.get("used_count", 0) >= limit:
        return False
    return True


def promotion_discount(content: dict, subtotal: float) -> dict:
    """Discount a valid promotion grants on a given subtotal.

    Returns the amount plus whether shipping becomes free.
    """
    promotion = content["promotion"]
    minimum = promotion.get("minimum_order") or 0
    if subtotal < minimum:
        return {"amount": 0.0, "free_shipping": False, "reason": f"Minimum order of {minimum:.2f} required"}
    discount_type = promotion.get("discount_type") or "fixed"
    value = promotion.get("discount_value") or 0
    if discount_type == "free_shipping" or promotion.get("type") == "free_shipping":
        return {"amount": 0.0, "free_shipping": True, "type": "fixed", "value": 0}
    if discount_type == "percentage":
        amount = subtotal * value / 100
    else:
        amount = value
    return {
        "amount": round(min(amount, subtotal), 2),
        "free_shipping": False,
        "type": discount_type,
        "value": value,
    }


def ratio(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0
    return round(numerator / denominator * 100, 2)


def with_virtuals(content: dict) -> dict:
    content = dict(content)
    analytics = content.get("analytics") or {}
    content["formatted_slug"] = content.get("slug") or slugify(content["title"])
    content["is_active_by_date"] = is_active_by_date(content)
    content["ctr"] = ratio(analytics.get("clicks", 0), analytics.get("views", 0))
    content["conversion_rate"] = ratio(analytics.get("conversions", 0), analytics.get("clicks", 0))
    return content
