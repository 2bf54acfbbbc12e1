import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from database import get_db, serialize_doc
from schemas import RefundReason
from security import AuthUser, get_current_user, require_admin
from services import orders as order_service
from services import payments

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


# --------------------- Models ---------------------

class PaymentIntentRequest(BaseModel):
    order_id: str


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str


class FailedPaymentRequest(BaseModel):
    payment_intent_id: str
    reason: Optional[str] = None


class SavePaymentMethodRequest(BaseModel):
    payment_method_id: str
    is_default: bool = False


class RefundRequest(BaseModel):
    order_id: str
    amount: Optional[float] = Field(None, gt=0)
    reason: RefundReason = "customer_request"


# --------------------- Routes ---------------------

@router.post("/create-payment-intent")
def create_payment_intent(req: PaymentIntentRequest, request: Request, user: AuthUser = Depends(get_current_user),
                          db=Depends(get_db)):
    return {"success": True, "data": payments.create_payment_intent(db, req.order_id, user, request)}


@router.post("/confirm-payment")
def confirm_payment(req: ConfirmPaymentRequest, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    result = payments.confirm_payment(db, req.payment_intent_id, user)
    return {"success": result.get("success", True), "data": result}


@router.post("/failed")
def payment_failed(req: FailedPaymentRequest, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    order = db["order"].find_one({"payment_intent_id": req.payment_intent_id})
    if order:
        order_service.get_order_for(db, order["_id"], user)
    return {"success": True, "data": payments.process_failed_payment(db, req.payment_intent_id, req.reason)}


@router.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None), db=Depends(get_db)):
    payload = await request.body()
    return payments.handle_webhook(db, payload, stripe_signature)


@router.get("/payment-methods")
def list_payment_methods(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "data": payments.list_payment_methods(db, user.id)}


@router.post("/save-payment-method")
def save_payment_method(req: SavePaymentMethodRequest, user: AuthUser = Depends(get_current_user),
                        db=Depends(get_db)):
    result = payments.save_payment_method(db, user.id, req.payment_method_id, req.is_default)
    return {"success": True, "message": "Payment method saved", "data": result}


@router.delete("/payment-methods/{payment_method_id}")
def delete_payment_method(payment_method_id: str, user: AuthUser = Depends(get_current_user)):
    payments.delete_payment_method(payment_method_id)
    return {"success": True, "message": "Payment method deleted"}


@router.post("/refund")
def refund(req: RefundRequest, request: Request, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    entry = payments.create_refund(db, req.order_id, req.amount, req.reason, admin.id, request)
    return {"success": entry["status"] == "completed", "data": serialize_doc(entry)}


@router.get("/analytics")
def analytics(time_range: str = "30d", admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": payments.payment_analytics(db, time_range)}
