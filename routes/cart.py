from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import get_db, serialize_doc
from security import AuthUser, get_current_user
from services import cart as cart_service

router = APIRouter(prefix="/api/cart", tags=["cart"])


class AddItemRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class UpdateItemRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class CouponRequest(BaseModel):
    code: str = Field(..., min_length=1)


@router.get("")
def get_cart(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": cart_service.get_cart(db, user.id)}


@router.get("/count")
def cart_count(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "count": cart_service.count(db, user.id)}


@router.post("/add")
def add_item(req: AddItemRequest, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    cart = cart_service.add_item(db, user.id, req.product_id, req.variant_id, req.quantity)
    return {"success": True, "message": "Item added to cart", "data": cart}


@router.put("/items/{item_id}")
def update_item(item_id: str, req: UpdateItemRequest, user: AuthUser = Depends(get_current_user),
                db=Depends(get_db)):
    cart = cart_service.update_item(db, user.id, item_id, req.quantity)
    return {"success": True, "message": "Cart updated", "data": cart}


@router.delete("/items/{item_id}")
def remove_item(item_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    cart = cart_service.remove_item(db, user.id, item_id)
    return {"success": True, "message": "Item removed from cart", "data": cart}


@router.delete("/clear")
def clear_cart(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    cart_service.clear(db, user.id)
    return {"success": True, "message": "Cart cleared"}


@router.post("/apply-coupon")
def apply_coupon(req: CouponRequest, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": serialize_doc(cart_service.apply_coupon(db, user.id, req.code))}


@router.post("/validate")
def validate_cart(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": cart_service.validate(db, user.id)}
