"""CMS content: banners, promotions, pages, announcements and FAQ entries."""
import logging
import time
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import create_document, paginate, to_object_id, utcnow
from exceptions import NotFoundError, ValidationError
from models import content as content_model
from models.product import slugify
from schemas import Content
from services.audit import log_event

logger = logging.getLogger(__name__)

TRACKED_EVENTS = {"view": "views", "click": "clicks", "conversion": "conversions"}


def get_content(db, content_id: Any) -> dict:
    content = db["content"].find_one({"_id": to_object_id(content_id, "content id")})
    if not content:
        raise NotFoundError("Content not found")
    return content


def _prepare(data: dict) -> dict:
    if data.get("promotion") and data["promotion"].get("code"):
        data["promotion"]["code"] = data["promotion"]["code"].strip().upper()
    if data.get("type") == "page" and data.get("status") == "published":
        page = data.setdefault("page", {}) or {}
        page["is_published"] = True
        page.setdefault("published_at", utcnow())
        data["page"] = page
    return data


def create_content(db, data: dict, user_id: Any, request=None) -> dict:
    data = dict(data)
    data["created_by"] = to_object_id(user_id)
    data["updated_by"] = data["created_by"]
    data["slug"] = data.get("slug") or slugify(data["title"])
    doc = Content(**_prepare(data)).model_dump()
    content_id = create_document(db, "content", doc)
    log_event(db, "content_create", "content", user_id=user_id, resource_id=content_id,
              details={"type": doc["type"], "title": doc["title"]}, request=request)
    return get_content(db, content_id)


def update_content(db, content_id: Any, data: dict, user_id: Any, request=None) -> dict:
    current = get_content(db, content_id)
    merged = {k: v for k, v in current.items() if k not in ("_id", "created_at", "updated_at")}
    merged.update({k: v for k, v in data.items() if v is not None})
    merged["updated_by"] = to_object_id(user_id)
    if data.get("title") and not data.get("slug"):
        merged["slug"] = slugify(data["title"])
    doc = Content(**_prepare(merged)).model_dump()
    doc["updated_at"] = utcnow()
    updated = db["content"].find_one_and_update(
        {"_id": current["_id"]}, {"$set": doc}, return_document=ReturnDocument.AFTER,
    )
    log_event(db, "content_update", "content", user_id=user_id, resource_id=current["_id"],
              details={"fields": sorted(k for k, v in data.items() if v is not None)}, request=request)
    return updated


def delete_content(db, content_id: Any, user_id: Any, request=None) -> None:
    content = get_content(db, content_id)
    db["content"].delete_one({"_id": content["_id"]})
    log_event(db, "content_delete", "content", user_id=user_id, resource_id=content["_id"],
              details={"title": content["title"], "type": content["type"]}, request=request)


def list_content(db, filters: Dict[str, Any], page: int = 1, limit: int = 50):
    query: Dict[str, Any] = {}
    for key in ("type", "status"):
        if filters.get(key):
            query[key] = filters[key]
    if filters.get("search"):
        pattern = {"$regex": filters["search"], "$options": "i"}
        query["$or"] = [{"title": pattern}, {"content": pattern}, {"excerpt": pattern}]
    direction = 1 if filters.get("sort_order") == "asc" else -1
    return paginate(db["content"], query, page, limit,
                    sort=[(filters.get("sort_by") or "created_at", direction)])


def bulk_update_status(db, ids: List[str], status: str, user_id: Any, request=None) -> int:
    if not ids:
        raise ValidationError("Content IDs are required")
    oids = [to_object_id(i, "content id") for i in ids]
    result = db["content"].update_many(
        {"_id": {"$in": oids}},
        {"$set": {"status": status, "updated_by": to_object_id(user_id), "updated_at": utcnow()}},
    )
    log_event(db, "content_bulk_update", "content", user_id=user_id,
              details={"content_ids": ids, "status": status, "updated_count": result.modified_count},
              request=request)
    return result.modified_count


def duplicate_content(db, content_id: Any, user_id: Any, request=None) -> dict:
    original = get_content(db, content_id)
    copy = {k: v for k, v in original.items() if k not in ("_id", "created_at", "updated_at")}
    copy.update({
        "title": f"{original['title']} (Copy)"[:200],
        "slug": f"{original.get('slug') or slugify(original['title'])}-copy-{int(time.time() * 1000)}",
        "status": "draft",
        "created_by": to_object_id(user_id),
        "updated_by": to_object_id(user_id),
        "analytics": {"views": 0, "clicks": 0, "conversions": 0, "last_viewed": None},
    })
    if copy.get("promotion"):
        copy["promotion"]["used_count"] = 0
    content_id = create_document(db, "content", copy)
    log_event(db, "content_duplicate", "content", user_id=user_id, resource_id=content_id,
              details={"original_id": str(original["_id"])}, request=request)
    return get_content(db, content_id)


def analytics_overview(db, content_type: Optional[str] = None, start_date=None, end_date=None) -> List[dict]:
    match: Dict[str, Any] = {}
    if content_type:
        match["type"] = content_type
    if start_date and end_date:
        match["created_at"] = {"$gte": start_date, "$lte": end_date}
    rows = db["content"].aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$type",
            "total_views": {"$sum": "$analytics.views"},
            "total_clicks": {"$sum": "$analytics.clicks"},
            "total_conversions": {"$sum": "$analytics.conversions"},
            "count": {"$sum": 1},
        }},
    ])
    return [{
        "type": row["_id"],
        "count": row["count"],
        "total_views": row["total_views"],
        "total_clicks": row["total_clicks"],
        "total_conversions": row["total_conversions"],
        "avg_ctr": content_model.ratio(row["total_clicks"], row["total_views"]),
        "avg_conversion_rate": content_model.ratio(row["total_conversions"], row["total_clicks"]),
    } for row in rows]


# --------------------- Public ---------------------

def _published(db, content_type: str, extra: Optional[dict] = None) -> List[dict]:
    query = {"type": content_type, "status": "published", **(extra or {})}
    return list(db["content"].find(query).sort([("priority", -1), ("created_at", -1)]))


def active_banners(db, position: Optional[str] = None) -> List[dict]:
    extra = {"banner.is_active": True}
    if position:
        extra["banner.position"] = position
    return [c for c in _published(db, "banner", extra) if content_model.is_active_by_date(c)]


def active_promotions(db) -> List[dict]:
    return [c for c in _published(db, "promotion") if content_model.is_promotion_valid(c)]


def published_pages(db) -> List[dict]:
    return _published(db, "page", {"page.is_published": True})


def page_by_slug(db, slug: str) -> dict:
    page = db["content"].find_one_and_update(
        {"slug": slug, "type": "page", "status": "published"},
        {"$inc": {"analytics.views": 1}, "$set": {"analytics.last_viewed": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not page:
        raise NotFoundError("Page not found")
    return page


def faq_by_category(db, category: str = "general") -> List[dict]:
    return list(db["content"].find({
        "type": "faq", "status": "published", "faq.is_published": True, "faq.category": category,
    }).sort([("faq.order", 1), ("created_at", -1)]))


def faq_categories(db) -> List[str]:
    return sorted(db["content"].distinct("faq.category", {"type": "faq", "status": "published"}))


def track(db, content_id: Any, event: str) -> dict:
    if event not in TRACKED_EVENTS:
        raise ValidationError("Invalid action. Must be view, click, or conversion")
    update: Dict[str, Any] = {"$inc": {f"analytics.{TRACKED_EVENTS[event]}": 1}}
    if event == "view":
        update["$set"] = {"analytics.last_viewed": utcnow()}
    content = db["content"].find_one_and_update(
        {"_id": to_object_id(content_id, "content id")}, update, return_document=ReturnDocument.AFTER,
    )
    if not content:
        raise NotFoundError("Content not found")
    return content["analytics"]


# --------------------- Promotions ---------------------

def find_promotion(db, code: str) -> dict:
    """Look up a promotion by coupon code and check it can still be used"""
    promotion = db["content"].find_one({"type": "promotion", "promotion.code": code.strip().upper()})
    if not promotion or not content_model.is_promotion_valid(promotion):
        raise ValidationError("Invalid or expired coupon code")
    return promotion


def quote_promotion(db, code: str, subtotal: float) -> Dict[str, Any]:
    promotion = find_promotion(db, code)
    discount = content_model.promotion_discount(promotion, subtotal)
    if discount.get("reason"):
        raise ValidationError(discount["reason"])
    discount["code"] = promotion["promotion"]["code"]
    discount["content_id"] = promotion["_id"]
    return discount


def redeem_promotion(db, content_id: Any) -> dict:
    """Count one use of a promotion; refuses once the usage limit is reached"""
    promotion = get_content(db, content_id)
    query: Dict[str, Any] = {"_id": promotion["_id"]}
    limit = (promotion.get("promotion") or {}).get("usage_limit")
    if limit:
        query["promotion.used_count"] = {"$lt": limit}
    updated = db["content"].find_one_and_update(
        query, {"$inc": {"promotion.used_count": 1}}, return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ValidationError("Coupon usage limit reached")
    return updated
