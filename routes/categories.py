import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_db, paginate, serialize_doc, to_object_id, utcnow
from exceptions import NotFoundError, ValidationError
from models import category as category_model
from models import product as product_model
from models.product import slugify
from schemas import Category, CategoryImage
from security import AuthUser, require_admin
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/categories", tags=["categories"])


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    parent: Optional[str] = None
    image: Optional[CategoryImage] = None
    icon: Optional[str] = None
    color: str = "#000000"
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = 0
    seo: Dict[str, Any] = Field(default_factory=dict)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    parent: Optional[str] = None
    image: Optional[CategoryImage] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    sort_order: Optional[int] = None
    seo: Optional[Dict[str, Any]] = None


class ReorderRequest(BaseModel):
    sort_order: int


def _load(db, category_id) -> dict:
    category = db["category"].find_one({"_id": to_object_id(category_id, "category id")})
    if not category:
        raise NotFoundError("Category not found")
    return category


def _parent(db, parent_id: Optional[str], category_id=None) -> Optional[dict]:
    if not parent_id:
        return None
    parent = _load(db, parent_id)
    if category_id is not None and (parent["_id"] == category_id
                                    or str(category_id) in (parent.get("path") or "").split("/")):
        raise ValidationError("A category cannot be moved under itself")
    return parent


@router.get("")
def list_categories(active: bool = True, tree: bool = False, db=Depends(get_db)):
    query = {"is_active": True} if active else {}
    categories = list(db["category"].find(query).sort([("sort_order", 1), ("name", 1)]))
    if tree:
        return {"success": True, "data": serialize_doc(category_model.build_tree(categories))}
    for category in categories:
        category["product_count"] = db["product"].count_documents({"category": category["_id"], "status": "active"})
    return {"success": True, "data": serialize_doc(categories)}


@router.get("/tree")
def category_tree(db=Depends(get_db)):
    categories = list(db["category"].find({"is_active": True}).sort([("sort_order", 1), ("name", 1)]))
    return {"success": True, "data": serialize_doc(category_model.build_tree(categories))}


@router.get("/featured")
def featured_categories(limit: int = 6, db=Depends(get_db)):
    categories = db["category"].find({"is_active": True, "is_featured": True}) \
        .sort([("sort_order", 1), ("name", 1)]).limit(limit)
    return {"success": True, "data": serialize_doc(list(categories))}


@router.get("/analytics/overview")
def category_analytics(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    performance = []
    for category in db["category"].find({"is_active": True}):
        performance.append({
            "id": str(category["_id"]),
            "name": category["name"],
            "product_count": db["product"].count_documents({"category": category["_id"]}),
            "active_products": db["product"].count_documents({"category": category["_id"], "status": "active"}),
        })
    performance.sort(key=lambda row: row["product_count"], reverse=True)
    return {"success": True, "data": {
        "overview": {
            "total_categories": db["category"].count_documents({}),
            "active_categories": db["category"].count_documents({"is_active": True}),
            "featured_categories": db["category"].count_documents({"is_featured": True}),
            "parent_categories": db["category"].count_documents({"parent": None}),
            "child_categories": db["category"].count_documents({"parent": {"$ne": None}}),
        },
        "category_performance": performance[:10],
    }}


@router.get("/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    # id or slug
    category = db["category"].find_one({"slug": category_id})
    if not category:
        category = _load(db, category_id)
    children = db["category"].find({"parent": category["_id"], "is_active": True}).sort("sort_order", 1)
    data = serialize_doc(category)
    data["children"] = serialize_doc(list(children))
    data["full_path"] = category_model.full_path(db, category)
    return {"success": True, "data": data}


@router.post("", status_code=201)
def create_category(req: CategoryIn, request: Request, admin: AuthUser = Depends(require_admin),
                    db=Depends(get_db)):
    slug = slugify(req.name)
    if db["category"].find_one({"$or": [{"slug": slug}, {"name": req.name}]}):
        raise ValidationError("Category with this name already exists")
    parent = _parent(db, req.parent)
    data = req.model_dump()
    data.update(category_model.lineage(parent))
    data["parent"] = parent["_id"] if parent else None
    data["slug"] = slug
    try:
        category_id = create_document(db, "category", Category(**data))
    except DuplicateKeyError:
        raise ValidationError("Category with this name already exists")
    log_event(db, "category_create", "category", user_id=admin.id, resource_id=category_id,
              details={"name": req.name}, request=request)
    return {"success": True, "data": serialize_doc(_load(db, category_id))}


@router.put("/{category_id}")
def update_category(category_id: str, req: CategoryUpdate, request: Request,
                    admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    category = _load(db, category_id)
    updates = req.model_dump(exclude_unset=True)
    if updates.get("name") and updates["name"] != category["name"]:
        slug = slugify(updates["name"])
        if db["category"].find_one({"slug": slug, "_id": {"$ne": category["_id"]}}):
            raise ValidationError("Category with this name already exists")
        updates["slug"] = slug
    if "parent" in updates:
        parent = _parent(db, updates["parent"], category["_id"])
        updates["parent"] = parent["_id"] if parent else None
        updates.update(category_model.lineage(parent))
    updates["updated_at"] = utcnow()
    updated = db["category"].find_one_and_update({"_id": category["_id"]}, {"$set": updates},
                                                 return_document=ReturnDocument.AFTER)
    log_event(db, "category_update", "category", user_id=admin.id, resource_id=category["_id"],
              details={"fields": sorted(k for k in updates if k != "updated_at")}, request=request)
    return {"success": True, "data": serialize_doc(updated)}


@router.delete("/{category_id}")
def delete_category(category_id: str, request: Request, admin: AuthUser = Depends(require_admin),
                    db=Depends(get_db)):
    category = _load(db, category_id)
    if db["product"].count_documents({"$or": [{"category": category["_id"]}, {"subcategory": category["_id"]}]}):
        raise ValidationError("Cannot delete category with products. Move or delete products first.")
    if db["category"].count_documents({"parent": category["_id"]}):
        raise ValidationError("Cannot delete category with subcategories. Delete subcategories first.")
    db["category"].delete_one({"_id": category["_id"]})
    log_event(db, "category_delete", "category", user_id=admin.id, resource_id=category["_id"],
              details={"name": category["name"]}, request=request)
    return {"success": True, "message": "Category deleted successfully"}


@router.put("/{category_id}/reorder")
def reorder_category(category_id: str, req: ReorderRequest, admin: AuthUser = Depends(require_admin),
                     db=Depends(get_db)):
    category = _load(db, category_id)
    updated = db["category"].find_one_and_update(
        {"_id": category["_id"]}, {"$set": {"sort_order": req.sort_order, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "data": serialize_doc(updated)}


def _toggle(db, category_id: str, field: str) -> dict:
    category = _load(db, category_id)
    return db["category"].find_one_and_update(
        {"_id": category["_id"]}, {"$set": {field: not category.get(field, False), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


@router.put("/{category_id}/toggle-status")
def toggle_status(category_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": serialize_doc(_toggle(db, category_id, "is_active"))}


@router.put("/{category_id}/toggle-featured")
def toggle_featured(category_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": serialize_doc(_toggle(db, category_id, "is_featured"))}


@router.get("/{category_id}/products")
def category_products(category_id: str, page: int = 1, limit: int = 12, sort: str = "created_at",
                      order: str = "desc", include_subcategories: bool = True, db=Depends(get_db)):
    category = _load(db, category_id)
    ids = [category["_id"]]
    if include_subcategories:
        ids += [c["_id"] for c in db["category"].find({"path": {"$regex": str(category["_id"])}}, {"_id": 1})]
    query = {"$or": [{"category": {"$in": ids}}, {"subcategory": {"$in": ids}}], "status": "active"}
    products, pagination = paginate(db["product"], query, page, limit, sort=[(sort, -1 if order == "desc" else 1)])
    return {
        "success": True,
        "data": [serialize_doc(product_model.with_virtuals(p)) for p in products],
        "category": serialize_doc(category),
        "pagination": pagination,
    }
