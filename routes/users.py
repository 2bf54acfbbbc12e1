import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from database import get_db, paginate, serialize_doc, to_object_id, utcnow
from exceptions import NotFoundError, ValidationError
from models import product as product_model
from schemas import SavedAddress
from security import AuthUser, get_current_user, public_user, require_admin, verify_password
from services import cart as cart_service
from services import orders as order_service
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


# --------------------- Models ---------------------

class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    phone: Optional[str] = None


class AddressUpdate(BaseModel):
    label: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None


class Preferences(BaseModel):
    newsletter: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    currency: Optional[str] = None
    language: Optional[str] = None


class MoveToCartRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class DeactivateRequest(BaseModel):
    password: str


class StatusRequest(BaseModel):
    is_active: bool


class RoleRequest(BaseModel):
    role: str = Field(..., pattern="^(customer|admin)$")


def _load(db, user_id) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise NotFoundError("User not found")
    return user


def _profile(user: dict) -> dict:
    data = public_user(user)
    data["addresses"] = serialize_doc(user.get("addresses", []))
    data["preferences"] = user.get("preferences", {})
    data["last_login"] = serialize_doc(user.get("last_login"))
    data["created_at"] = serialize_doc(user.get("created_at"))
    return data


# --------------------- Profile ---------------------

@router.get("/profile")
def get_profile(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": _profile(_load(db, user.id))}


@router.put("/profile")
def update_profile(req: ProfileUpdate, request: Request, user: AuthUser = Depends(get_current_user),
                   db=Depends(get_db)):
    updates = req.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    db["user"].update_one({"_id": user.oid}, {"$set": {**updates, "updated_at": utcnow()}})
    log_event(db, "profile_update", "user", user_id=user.id, resource_id=user.oid,
              details={"fields": sorted(updates)}, request=request)
    return {"success": True, "data": _profile(_load(db, user.id))}


# --------------------- Addresses ---------------------

@router.get("/addresses")
def list_addresses(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": serialize_doc(_load(db, user.id).get("addresses", []))}


@router.post("/addresses", status_code=201)
def add_address(req: SavedAddress, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    doc = _load(db, user.id)
    address = req.model_dump()
    address["_id"] = ObjectId()
    addresses = doc.get("addresses", [])
    if address["is_default"] or not addresses:
        address["is_default"] = True
        for existing in addresses:
            existing["is_default"] = False
    addresses.append(address)
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return {"success": True, "data": serialize_doc(addresses)}


@router.put("/addresses/{address_id}")
def update_address(address_id: str, req: AddressUpdate, user: AuthUser = Depends(get_current_user),
                   db=Depends(get_db)):
    doc = _load(db, user.id)
    addresses = doc.get("addresses", [])
    target = next((a for a in addresses if str(a["_id"]) == address_id), None)
    if target is None:
        raise NotFoundError("Address not found")
    updates = req.model_dump(exclude_none=True)
    if updates.get("is_default"):
        for existing in addresses:
            existing["is_default"] = False
    target.update(updates)
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return {"success": True, "data": serialize_doc(addresses)}


@router.delete("/addresses/{address_id}")
def delete_address(address_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    doc = _load(db, user.id)
    addresses = doc.get("addresses", [])
    remaining = [a for a in addresses if str(a["_id"]) != address_id]
    if len(remaining) == len(addresses):
        raise NotFoundError("Address not found")
    if remaining and not any(a.get("is_default") for a in remaining):
        remaining[0]["is_default"] = True
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"addresses": remaining, "updated_at": utcnow()}})
    return {"success": True, "data": serialize_doc(remaining)}


# --------------------- Wishlist ---------------------

@router.get("/wishlist")
def get_wishlist(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    ids = _load(db, user.id).get("wishlist", [])
    products = db["product"].find({"_id": {"$in": ids}, "status": "active"})
    return {"success": True, "data": [serialize_doc(product_model.with_virtuals(p)) for p in products]}


@router.get("/wishlist/count")
def wishlist_count(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "count": len(_load(db, user.id).get("wishlist", []))}


@router.post("/wishlist/move-to-cart")
def move_to_cart(req: MoveToCartRequest, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    product_id = to_object_id(req.product_id, "product id")
    if product_id not in _load(db, user.id).get("wishlist", []):
        raise NotFoundError("Product not in wishlist")
    cart = cart_service.add_item(db, user.id, product_id, req.variant_id, req.quantity)
    db["user"].update_one({"_id": user.oid}, {"$pull": {"wishlist": product_id}})
    return {"success": True, "message": "Product moved to cart", "data": cart}


@router.post("/wishlist/{product_id}")
def add_to_wishlist(product_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    pid = to_object_id(product_id, "product id")
    if not db["product"].find_one({"_id": pid}):
        raise NotFoundError("Product not found")
    db["user"].update_one({"_id": user.oid}, {"$addToSet": {"wishlist": pid}})
    return {"success": True, "message": "Product added to wishlist"}


@router.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    db["user"].update_one({"_id": user.oid}, {"$pull": {"wishlist": to_object_id(product_id, "product id")}})
    return {"success": True, "message": "Product removed from wishlist"}


@router.delete("/wishlist")
def clear_wishlist(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    db["user"].update_one({"_id": user.oid}, {"$set": {"wishlist": []}})
    return {"success": True, "message": "Wishlist cleared"}


# --------------------- Preferences, history, account ---------------------

@router.get("/preferences")
def get_preferences(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": _load(db, user.id).get("preferences", {})}


@router.put("/preferences")
def update_preferences(req: Preferences, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    updates = {f"preferences.{k}": v for k, v in req.model_dump(exclude_none=True).items()}
    if updates:
        db["user"].update_one({"_id": user.oid}, {"$set": updates})
    return {"success": True, "data": _load(db, user.id).get("preferences", {})}


@router.get("/order-history")
def order_history(page: int = 1, limit: int = 10, user: AuthUser = Depends(get_current_user),
                  db=Depends(get_db)):
    orders, pagination = order_service.list_orders(db, {"customer": user.id}, page, limit)
    return {"success": True, "data": serialize_doc(orders), "pagination": pagination}


@router.delete("/account")
def deactivate_account(req: DeactivateRequest, request: Request, user: AuthUser = Depends(get_current_user),
                       db=Depends(get_db)):
    doc = _load(db, user.id)
    if not verify_password(req.password, doc.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Password is incorrect")
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    log_event(db, "account_deactivate", "user", user_id=user.id, resource_id=doc["_id"], request=request)
    return {"success": True, "message": "Account deactivated successfully"}


# --------------------- Admin ---------------------

@router.get("/admin/all")
def admin_list_users(search: Optional[str] = None, role: Optional[str] = None,
                     is_active: Optional[bool] = None, page: int = 1, limit: int = 20,
                     admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": search, "$options": "i"}
        query["$or"] = [{"first_name": pattern}, {"last_name": pattern}, {"email": pattern}]
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    users, pagination = paginate(db["user"], query, page, limit, sort=[("created_at", -1)])
    return {"success": True, "data": [_profile(u) for u in users], "pagination": pagination}


@router.get("/admin/stats")
def admin_user_stats(days: int = Query(30, ge=1), admin: AuthUser = Depends(require_admin),
                     db=Depends(get_db)):
    since = utcnow() - timedelta(days=days)
    return {"success": True, "data": {
        "total_users": db["user"].count_documents({}),
        "active_users": db["user"].count_documents({"is_active": True}),
        "admins": db["user"].count_documents({"role": "admin"}),
        "new_users": db["user"].count_documents({"created_at": {"$gte": since}}),
        "recent_logins": db["user"].count_documents({"last_login": {"$gte": since}}),
    }}


@router.get("/admin/{user_id}")
def admin_get_user(user_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    user = _load(db, user_id)
    data = _profile(user)
    data["order_stats"] = serialize_doc(order_service.customer_order_summary(db, user["_id"]))
    return {"success": True, "data": data}


@router.put("/admin/{user_id}/status")
def admin_set_status(user_id: str, req: StatusRequest, request: Request,
                     admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    user = _load(db, user_id)
    if str(user["_id"]) == admin.id and not req.is_active:
        raise ValidationError("You cannot deactivate your own account")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": req.is_active, "updated_at": utcnow()}})
    log_event(db, "user_status_update", "user", user_id=admin.id, resource_id=user["_id"],
              details={"is_active": req.is_active}, request=request)
    return {"success": True, "data": _profile(_load(db, user_id))}


@router.put("/admin/{user_id}/role")
def admin_set_role(user_id: str, req: RoleRequest, request: Request,
                   admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    user = _load(db, user_id)
    if str(user["_id"]) == admin.id:
        raise ValidationError("You cannot change your own role")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"role": req.role, "updated_at": utcnow()}})
    log_event(db, "user_role_update", "user", user_id=admin.id, resource_id=user["_id"],
              details={"old_role": user.get("role"), "new_role": req.role}, request=request)
    return {"success": True, "data": _profile(_load(db, user_id))}
