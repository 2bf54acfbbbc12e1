"""Admin order desk: status changes, returns and refunds."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from database import get_db, serialize_doc
from models import order as order_model
from schemas import OrderStatus, PaymentStatus, RefundReason, RefundStatus, ReturnReason, ReturnStatus
from security import AuthUser, get_current_user, require_admin
from services import orders as order_service

router = APIRouter(prefix="/api/order-management", tags=["order-management"])


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ReturnItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    reason: Optional[ReturnReason] = None
    condition: Optional[str] = None


class ReturnRequest(BaseModel):
    items: List[ReturnItem] = Field(..., min_length=1)
    return_reason: ReturnReason
    notes: Optional[str] = Field(None, max_length=500)
    refund_amount: Optional[float] = Field(None, ge=0)


class ReturnStatusUpdate(BaseModel):
    status: ReturnStatus
    note: Optional[str] = None


class RefundCreate(BaseModel):
    amount: float = Field(..., gt=0)
    reason: RefundReason
    type: str = Field("partial", pattern="^(full|partial)$")
    method: str = "original_payment"
    notes: Optional[str] = None


class RefundStatusUpdate(BaseModel):
    status: RefundStatus
    note: Optional[str] = None


# --------------------- Orders ---------------------

@router.get("/orders")
def list_orders(status: Optional[OrderStatus] = None, payment_status: Optional[PaymentStatus] = None,
                customer: Optional[str] = None, search: Optional[str] = None,
                start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                sort_by: str = "created_at", sort_order: str = "desc", page: int = 1, limit: int = 20,
                admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    filters = {"status": status, "payment_status": payment_status, "customer": customer, "search": search,
               "start_date": start_date, "end_date": end_date, "sort_by": sort_by, "sort_order": sort_order}
    orders, pagination = order_service.list_orders(db, filters, page, limit)
    return {"success": True, "data": [serialize_doc(order_model.with_virtuals(o)) for o in orders],
            "pagination": pagination}


@router.get("/orders/{order_id}")
def get_order(order_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    order = order_service.get_order(db, order_id)
    data = serialize_doc(order_model.with_virtuals(order))
    data["return_stats"] = order_model.return_stats(order)
    return {"success": True, "data": data}


@router.put("/orders/{order_id}/status")
def update_status(order_id: str, req: StatusUpdate, request: Request, admin: AuthUser = Depends(require_admin),
                  db=Depends(get_db)):
    order = order_service.update_status(db, order_id, req.status, req.note, admin.id,
                                        {"tracking_number": req.tracking_number, "carrier": req.carrier}, request)
    return {"success": True, "data": serialize_doc(order_model.with_virtuals(order))}


@router.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, req: CancelRequest, request: Request, admin: AuthUser = Depends(require_admin),
                 db=Depends(get_db)):
    order = order_service.cancel_order(db, order_id, req.reason, admin, request)
    return {"success": True, "data": serialize_doc(order_model.with_virtuals(order))}


# --------------------- Returns ---------------------

@router.post("/orders/{order_id}/returns", status_code=201)
def create_return(order_id: str, req: ReturnRequest, request: Request, user: AuthUser = Depends(get_current_user),
                  db=Depends(get_db)):
    entry = order_service.create_return_request(db, order_id, req.model_dump(), user, request)
    return {"success": True, "message": "Return request created", "data": serialize_doc(entry)}


@router.get("/orders/{order_id}/returns/{return_id}")
def get_return(order_id: str, return_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    order = order_service.get_order_for(db, order_id, user)
    return {"success": True, "data": serialize_doc(order_model.find_embedded(order, "returns", return_id))}


@router.put("/orders/{order_id}/returns/{return_id}/status")
def update_return_status(order_id: str, return_id: str, req: ReturnStatusUpdate, request: Request,
                         admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    entry = order_service.update_return_status(db, order_id, return_id, req.status, req.note, admin.id, request)
    return {"success": True, "data": serialize_doc(entry)}


# --------------------- Refunds ---------------------

@router.post("/orders/{order_id}/refunds", status_code=201)
def create_refund(order_id: str, req: RefundCreate, request: Request, admin: AuthUser = Depends(require_admin),
                  db=Depends(get_db)):
    entry = order_service.create_refund(db, order_id, req.model_dump(), admin.id, request)
    return {"success": True, "message": "Refund created", "data": serialize_doc(entry)}


@router.get("/orders/{order_id}/refunds/{refund_id}")
def get_refund(order_id: str, refund_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    order = order_service.get_order(db, order_id)
    return {"success": True, "data": serialize_doc(order_model.find_embedded(order, "refunds", refund_id))}


@router.put("/orders/{order_id}/refunds/{refund_id}/status")
def update_refund_status(order_id: str, refund_id: str, req: RefundStatusUpdate, request: Request,
                         admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    entry = order_service.update_refund_status(db, order_id, refund_id, req.status, req.note, admin.id, request)
    return {"success": True, "data": serialize_doc(entry)}


@router.post("/orders/{order_id}/refunds/{refund_id}/process")
def process_refund(order_id: str, refund_id: str, request: Request, admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    entry = order_service.process_refund(db, order_id, refund_id, admin.id, request)
    return {"success": entry["status"] == "completed", "data": serialize_doc(entry)}


# --------------------- Stats ---------------------

@router.get("/stats/overview")
def stats_overview(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                   admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": order_service.order_stats(db, start_date, end_date)}


@router.get("/stats/returns")
def stats_returns(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                  admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": order_service.return_stats(db, start_date, end_date)}


@router.get("/customer/{customer_id}")
def customer_orders(customer_id: str, page: int = 1, limit: int = 20, admin: AuthUser = Depends(require_admin),
                    db=Depends(get_db)):
    orders, pagination = order_service.list_orders(db, {"customer": customer_id}, page, limit)
    return {
        "success": True,
        "data": [serialize_doc(order_model.with_virtuals(o)) for o in orders],
        "summary": serialize_doc(order_service.customer_order_summary(db, customer_id)),
        "pagination": pagination,
    }
