import logging
import re
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, paginate, serialize_doc, to_object_id, update_and_fetch, utcnow
from exceptions import NotFoundError, ValidationError
from models import category as category_model
from models import product as product_model
from schemas import Product, ProductStatus, VariantStatus
from security import AuthUser, get_optional_user, require_admin
from services import inventory
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

# fields maintained by the inventory service, never written through product updates
STOCK_FIELDS = {"variants", "inventory", "sales_count", "view_count", "last_order_date", "ratings"}


# --------------------- Models ---------------------

class StatusRequest(BaseModel):
    status: ProductStatus


class StockRequest(BaseModel):
    quantity: int = Field(..., ge=0)
    variant_id: Optional[str] = None
    operation: Literal["set", "add", "subtract"] = "set"
    reason: Optional[str] = None


class VariantIn(BaseModel):
    size: str
    color: str
    color_code: Optional[str] = None
    material: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    reorder_point: int = Field(5, ge=0)
    reorder_quantity: int = Field(10, ge=1)
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: str
    status: VariantStatus = "active"


class VariantUpdate(BaseModel):
    color_code: Optional[str] = None
    material: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0)
    reorder_point: Optional[int] = Field(None, ge=0)
    reorder_quantity: Optional[int] = Field(None, ge=1)
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)


class VariantStatusRequest(BaseModel):
    status: VariantStatus


# --------------------- Helpers ---------------------

def _out(product: dict) -> dict:
    return serialize_doc(product_model.with_virtuals(product))


def _category_id(db, value: Any):
    category = db["category"].find_one({"slug": str(value).lower()})
    if category:
        return category["_id"]
    category = db["category"].find_one({"_id": to_object_id(value, "category id")})
    if not category:
        raise ValidationError("Category not found")
    return category["_id"]


def _stock_query() -> Dict[str, Any]:
    return {"$or": [{"inventory.quantity": {"$gt": 0}}, {"variants.stock": {"$gt": 0}}]}


def _search(q: str) -> Dict[str, Any]:
    pattern = {"$regex": re.escape(q), "$options": "i"}
    return {"$or": [{"name": pattern}, {"description": pattern}, {"brand": pattern}, {"tags": pattern}]}


# --------------------- Public ---------------------

@router.get("")
def list_products(page: int = 1, limit: int = 12, category: Optional[str] = None,
                  gender: Optional[str] = None, brand: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  sort_by: str = "created_at", sort_order: str = "desc", search: Optional[str] = None,
                  featured: Optional[bool] = None, on_sale: Optional[bool] = None,
                  new_arrival: Optional[bool] = None, in_stock: bool = False, status: str = "active",
                  user: Optional[AuthUser] = Depends(get_optional_user), db=Depends(get_db)):
    query: Dict[str, Any] = {"status": status if user and user.is_admin else "active"}
    clauses: List[dict] = []
    if category:
        query["category"] = _category_id(db, category)
    if gender and gender.lower() in ("men", "women", "unisex"):
        query["gender"] = gender.lower()
    if brand:
        query["brand"] = {"$regex": re.escape(brand), "$options": "i"}
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if featured:
        query["featured"] = True
    if on_sale:
        query["on_sale"] = True
    if new_arrival:
        query["new_arrival"] = True
    if in_stock:
        clauses.append(_stock_query())
    if search:
        clauses.append(_search(search))
    if clauses:
        query["$and"] = clauses
    products, pagination = paginate(db["product"], query, page, limit,
                                    sort=[(sort_by, 1 if sort_order == "asc" else -1)])
    return {"success": True, "data": [_out(p) for p in products], "pagination": pagination}


def _highlight(db, flag: str, limit: int, sort: str) -> List[dict]:
    products = db["product"].find({"status": "active", flag: True, **_stock_query()}) \
        .sort(sort, -1).limit(limit)
    return [_out(p) for p in products]


@router.get("/featured")
def featured_products(limit: int = 8, db=Depends(get_db)):
    return {"success": True, "data": _highlight(db, "featured", limit, "created_at")}


@router.get("/bestsellers")
def bestsellers(limit: int = 8, db=Depends(get_db)):
    return {"success": True, "data": _highlight(db, "bestseller", limit, "sales_count")}


@router.get("/new-arrivals")
def new_arrivals(limit: int = 8, db=Depends(get_db)):
    return {"success": True, "data": _highlight(db, "new_arrival", limit, "created_at")}


@router.get("/search")
def search_products(q: str = Query(..., min_length=2), limit: int = 20, db=Depends(get_db)):
    products = db["product"].find({"status": "active", **_search(q)}).sort("sales_count", -1).limit(limit)
    data = [_out(p) for p in products]
    return {"success": True, "data": data, "count": len(data)}


@router.get("/analytics/overview")
def product_analytics(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    products = list(db["product"].find({}))
    top = sorted((p for p in products if p["status"] == "active"),
                 key=lambda p: (p.get("sales_count", 0), p.get("view_count", 0)), reverse=True)[:5]
    return {"success": True, "data": {
        "overview": {
            "total_products": len(products),
            "active_products": sum(1 for p in products if p["status"] == "active"),
            "draft_products": sum(1 for p in products if p["status"] == "draft"),
            "out_of_stock_products": sum(1 for p in products if product_model.total_stock(p) == 0),
            "low_stock_products": sum(1 for p in products if product_model.is_low_stock(p)),
        },
        "top_products": [{
            "id": str(p["_id"]),
            "name": p["name"],
            "price": p["price"],
            "sales_count": p.get("sales_count", 0),
            "view_count": p.get("view_count", 0),
        } for p in top],
    }}


@router.get("/{product_id}")
def get_product(product_id: str, user: Optional[AuthUser] = Depends(get_optional_user), db=Depends(get_db)):
    query: Dict[str, Any] = {"seo.slug": product_id}
    if not db["product"].find_one(query, {"_id": 1}):
        query = {"_id": to_object_id(product_id, "product id")}
    if not (user and user.is_admin):
        query["status"] = "active"
    product = db["product"].find_one_and_update(query, {"$inc": {"view_count": 1}},
                                                return_document=ReturnDocument.AFTER)
    if not product:
        raise NotFoundError("Product not found")
    related = db["product"].find({
        "category": product["category"], "status": "active", "_id": {"$ne": product["_id"]},
    }).limit(4)
    return {"success": True, "data": _out(product), "related": [_out(p) for p in related]}


# --------------------- Admin ---------------------

@router.post("", status_code=201)
def create_product(body: Dict[str, Any], request: Request, admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    body = dict(body)
    body["category"] = _category_id(db, body.get("category"))
    if body.get("subcategory"):
        body["subcategory"] = _category_id(db, body["subcategory"])
    doc = product_model.build_product(body, admin.oid)
    try:
        product_id = create_document(db, "product", doc)
    except DuplicateKeyError:
        raise ValidationError("Product with this SKU already exists")
    category_model.update_product_count(db, doc["category"])
    logger.info("Product %s created", doc["sku"])
    log_event(db, "product_create", "product", user_id=admin.id, resource_id=product_id,
              details={"name": doc["name"], "sku": doc["sku"]}, request=request)
    return {"success": True, "data": _out(inventory.get_product(db, product_id))}


@router.put("/{product_id}")
def update_product(product_id: str, body: Dict[str, Any], request: Request,
                   admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    current = inventory.get_product(db, product_id)
    changes = {k: v for k, v in body.items() if k not in STOCK_FIELDS and k not in ("_id", "id")}
    if "category" in changes:
        changes["category"] = _category_id(db, changes["category"])
    merged = {k: v for k, v in current.items() if k not in ("_id", "created_at", "updated_at", "variants")}
    merged.update(changes)
    validated = Product(**merged).model_dump()
    updates = {k: validated[k] for k in changes}
    if "sku" in updates:
        updates["sku"] = updates["sku"].strip().upper()
    if "name" in updates and "seo" not in updates:
        updates["seo.slug"] = product_model.slugify(updates["name"])
    if updates.get("status") == "active" and not current.get("published_at"):
        updates["published_at"] = utcnow()
    updates["updated_by"] = admin.oid
    updates["updated_at"] = utcnow()
    try:
        updated = db["product"].find_one_and_update({"_id": current["_id"]}, {"$set": updates},
                                                    return_document=ReturnDocument.AFTER)
    except DuplicateKeyError:
        raise ValidationError("Product with this SKU already exists")
    for category_id in {current["category"], updated["category"]}:
        category_model.update_product_count(db, category_id)
    log_event(db, "product_update", "product", user_id=admin.id, resource_id=current["_id"],
              details={"fields": sorted(changes)}, request=request)
    return {"success": True, "data": _out(updated)}


@router.delete("/{product_id}")
def delete_product(product_id: str, request: Request, admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    product = inventory.get_product(db, product_id)
    open_orders = db["order"].count_documents({
        "items.product": product["_id"], "status": {"$in": ["pending", "confirmed", "processing"]},
    })
    if open_orders:
        raise ValidationError("Product has open orders; archive it instead")
    db["product"].delete_one({"_id": product["_id"]})
    db["user"].update_many({}, {"$pull": {"wishlist": product["_id"], "cart": {"product": product["_id"]}}})
    category_model.update_product_count(db, product["category"])
    log_event(db, "product_delete", "product", user_id=admin.id, resource_id=product["_id"],
              details={"name": product["name"], "sku": product["sku"]}, request=request)
    return {"success": True, "message": "Product deleted successfully"}


@router.put("/{product_id}/status")
def update_status(product_id: str, req: StatusRequest, request: Request,
                  admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = inventory.get_product(db, product_id)
    updates: Dict[str, Any] = {"status": req.status, "updated_by": admin.oid, "updated_at": utcnow()}
    if req.status == "active" and not product.get("published_at"):
        updates["published_at"] = utcnow()
    updated = db["product"].find_one_and_update({"_id": product["_id"]}, {"$set": updates},
                                                return_document=ReturnDocument.AFTER)
    category_model.update_product_count(db, product["category"])
    log_event(db, "product_status_update", "product", user_id=admin.id, resource_id=product["_id"],
              details={"old_status": product["status"], "new_status": req.status}, request=request)
    return {"success": True, "data": _out(updated)}


@router.put("/{product_id}/stock")
def update_stock(product_id: str, req: StockRequest, request: Request,
                 admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = inventory.get_product(db, product_id)
    if req.operation == "add":
        delta = req.quantity
    elif req.operation == "subtract":
        delta = -req.quantity
    else:
        if req.variant_id:
            current = product_model.find_variant(product, req.variant_id)["stock"]
        elif product_model.has_variants(product):
            raise ValidationError("A variant must be selected for products with variants")
        else:
            current = product["inventory"]["quantity"]
        delta = req.quantity - current
    if delta:
        product = inventory.update_stock(db, product["_id"], req.variant_id, delta,
                                         req.reason or "manual", None, admin.id, request)
    return {"success": True, "message": "Stock updated successfully", "data": _out(product)}


# --------------------- Variants ---------------------

@router.post("/{product_id}/variants", status_code=201)
def add_variant(product_id: str, req: VariantIn, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = inventory.get_product(db, product_id)
    variant = product_model.build_variant(req.model_dump())
    if any(v["sku"] == variant["sku"] for v in product.get("variants", [])):
        raise ValidationError("Variant with this SKU already exists")
    if any(v["size"] == variant["size"] and v["color"].lower() == variant["color"].lower()
           for v in product.get("variants", [])):
        raise ValidationError("Variant with this size and color already exists")
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$push": {"variants": variant}, "$set": {"updated_at": utcnow(), "updated_by": admin.oid}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "data": _out(updated)}


@router.put("/{product_id}/variants/{variant_id}")
def update_variant(product_id: str, variant_id: str, req: VariantUpdate,
                   admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = inventory.get_product(db, product_id)
    variant = product_model.find_variant(product, variant_id)
    updates = {f"variants.$.{k}": v for k, v in req.model_dump(exclude_none=True).items()}
    if not updates:
        raise ValidationError("No fields to update")
    updates["updated_at"] = utcnow()
    updated = update_and_fetch(
        db["product"],
        {"_id": product["_id"], "variants": {"$elemMatch": {"_id": variant["_id"]}}},
        {"$set": updates},
    )
    return {"success": True, "data": _out(updated)}


@router.delete("/{product_id}/variants/{variant_id}")
def remove_variant(product_id: str, variant_id: str, admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    product = inventory.get_product(db, product_id)
    variant = product_model.find_variant(product, variant_id)
    if variant.get("reserved_stock"):
        raise ValidationError("Variant has reserved stock and cannot be removed")
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$pull": {"variants": {"_id": variant["_id"]}}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "data": _out(updated)}


@router.put("/{product_id}/variants/{variant_id}/status")
def variant_status(product_id: str, variant_id: str, req: VariantStatusRequest,
                   admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    updated = inventory.update_variant_status(db, product_id, variant_id, req.status, admin.oid)
    return {"success": True, "data": _out(updated)}
