import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field

from database import get_db, serialize_doc
from models import order as order_model
from schemas import Address, OrderStatus, PaymentMethod, PaymentStatus, RefundReason, ShippingMethod
from security import AuthUser, get_current_user, require_admin
from services import cart as cart_service
from services import orders as order_service
from services import payments
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


# --------------------- Models ---------------------

class OrderLine(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)


class CustomerDetails(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class CreateOrderRequest(BaseModel):
    items: List[OrderLine] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: ShippingMethod = "standard"
    payment_method: PaymentMethod = "stripe"
    coupon_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)
    customer_info: Optional[CustomerDetails] = None
    clear_cart: bool = False


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: RefundReason = "customer_request"


def _out(order: dict) -> dict:
    return serialize_doc(order_model.with_virtuals(order))


# --------------------- Customer ---------------------

@router.post("", status_code=201)
def create_order(req: CreateOrderRequest, request: Request, user: AuthUser = Depends(get_current_user),
                 db=Depends(get_db)):
    data = req.model_dump(exclude={"clear_cart"})
    if data["customer_info"]:
        data["customer_info"] = {k: v for k, v in data["customer_info"].items() if v}
    order = order_service.create_order(db, user.id, data, request)
    if req.clear_cart:
        cart_service.clear(db, user.id)
    return {"success": True, "message": "Order created successfully", "data": _out(order)}


@router.get("/my-orders")
def my_orders(status: Optional[OrderStatus] = None, page: int = 1, limit: int = 10,
              user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    orders, pagination = order_service.list_orders(db, {"customer": user.id, "status": status}, page, limit)
    return {"success": True, "data": [_out(o) for o in orders], "pagination": pagination}


# --------------------- Admin lists & analytics ---------------------

@router.get("")
def list_orders(status: Optional[OrderStatus] = None, payment_status: Optional[PaymentStatus] = None,
                search: Optional[str] = None, start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None, sort_by: str = "created_at", sort_order: str = "desc",
                page: int = 1, limit: int = 20, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    filters = {"status": status, "payment_status": payment_status, "search": search, "start_date": start_date,
               "end_date": end_date, "sort_by": sort_by, "sort_order": sort_order}
    orders, pagination = order_service.list_orders(db, filters, page, limit)
    return {"success": True, "data": [_out(o) for o in orders], "pagination": pagination}


@router.get("/analytics/overview")
def analytics_overview(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                       admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": order_service.order_stats(db, start_date, end_date)}


@router.get("/analytics/revenue")
def analytics_revenue(days: int = Query(30, ge=1, le=365), admin: AuthUser = Depends(require_admin),
                      db=Depends(get_db)):
    return {"success": True, "data": order_service.revenue_by_day(db, days)}


# --------------------- Single order ---------------------

@router.get("/{order_id}")
def get_order(order_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": _out(order_service.get_order_for(db, order_id, user))}


@router.put("/{order_id}/status")
def update_status(order_id: str, req: StatusUpdate, request: Request, admin: AuthUser = Depends(require_admin),
                  db=Depends(get_db)):
    order = order_service.update_status(db, order_id, req.status, req.note, admin.id,
                                        {"tracking_number": req.tracking_number, "carrier": req.carrier}, request)
    return {"success": True, "message": "Order status updated successfully", "data": _out(order)}


@router.put("/{order_id}/payment-status")
def update_payment_status(order_id: str, req: PaymentStatusUpdate, request: Request,
                          admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    order = order_service.update_payment_status(db, order_id, req.payment_status, admin.id, request)
    return {"success": True, "data": _out(order)}


@router.put("/{order_id}/cancel")
def cancel_order(order_id: str, req: CancelRequest, request: Request, user: AuthUser = Depends(get_current_user),
                 db=Depends(get_db)):
    order = order_service.cancel_order(db, order_id, req.reason, user, request)
    return {"success": True, "message": "Order cancelled successfully", "data": _out(order)}


@router.post("/{order_id}/refund")
def refund_order(order_id: str, req: RefundRequest, request: Request, admin: AuthUser = Depends(require_admin),
                 db=Depends(get_db)):
    refund = payments.create_refund(db, order_id, req.amount, req.reason, admin.id, request)
    return {"success": True, "data": serialize_doc(refund)}


@router.post("/{order_id}/reorder")
def reorder(order_id: str, request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    outcome = order_service.reorder(db, order_id, user)
    log_event(db, "order_reorder", "order", user_id=user.id, resource_id=order_id,
              details={"added": len(outcome["added"]), "skipped": len(outcome["skipped"])}, request=request)
    return {"success": True, "message": f"{len(outcome['added'])} items added to cart", "data": outcome}
