import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from database import get_db, serialize_doc
from models import product as product_model
from security import AuthUser, get_current_user, require_admin
from services import inventory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


# --------------------- Models ---------------------

class StockChange(BaseModel):
    variant_id: Optional[str] = None
    quantity: int = Field(..., description="Positive to add stock, negative to remove it")
    reason: str = "manual"
    reference: Optional[str] = None


class BulkStockRow(StockChange):
    product_id: str


class BulkStockRequest(BaseModel):
    updates: List[BulkStockRow] = Field(..., min_length=1)


class ReservationRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    reference: Optional[str] = None


class AvailabilityItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)


class AvailabilityRequest(BaseModel):
    items: List[AvailabilityItem] = Field(..., min_length=1)


class ReorderSettings(BaseModel):
    variant_id: Optional[str] = None
    reorder_point: Optional[int] = Field(None, ge=0)
    reorder_quantity: Optional[int] = Field(None, ge=1)
    low_stock_threshold: Optional[int] = Field(None, ge=0)


def _stock_view(product: dict) -> dict:
    return {
        "product_id": str(product["_id"]),
        "sku": product["sku"],
        "total_stock": product_model.total_stock(product),
        "available_stock": product_model.available_stock(product),
        "inventory": serialize_doc({k: v for k, v in product.get("inventory", {}).items()
                                    if k not in ("stock_history", "low_stock_alerts")}),
        "variants": serialize_doc(product.get("variants", [])),
    }


# --------------------- Reports ---------------------

@router.get("/report")
def inventory_report(category: Optional[str] = None, status: Optional[str] = None, low_stock: bool = False,
                     out_of_stock: bool = False, sort_by: str = "name", sort_order: str = "asc",
                     page: int = 1, limit: int = 50, admin: AuthUser = Depends(require_admin),
                     db=Depends(get_db)):
    filters = {"category": category, "status": status, "low_stock": low_stock, "out_of_stock": out_of_stock,
               "sort_by": sort_by, "sort_order": sort_order}
    report, pagination = inventory.get_inventory_report(db, filters, page, limit)
    return {"success": True, "data": serialize_doc(report), "pagination": pagination}


@router.get("/alerts/low-stock")
def low_stock_alerts(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    alerts = inventory.get_low_stock_alerts(db)
    return {"success": True, "data": alerts, "count": len(alerts)}


@router.put("/alerts/{product_id}/{alert_id}/resolve")
def resolve_alert(product_id: str, alert_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = inventory.resolve_low_stock_alert(db, product_id, alert_id, admin.oid)
    return {"success": True, "message": "Alert resolved", "data": _stock_view(product)}


@router.get("/reorder-suggestions")
def reorder_suggestions(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    suggestions = inventory.get_reorder_suggestions(db)
    return {"success": True, "data": suggestions, "count": len(suggestions)}


@router.get("/dashboard/stats")
def dashboard(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": inventory.dashboard_stats(db)}


@router.get("/history/{product_id}")
def stock_history(product_id: str, type: Optional[str] = None, start_date: Optional[datetime] = None,
                  end_date: Optional[datetime] = None, page: int = 1, limit: int = 50,
                  admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    history, pagination = inventory.get_stock_history(db, product_id, type, start_date, end_date, page, limit)
    return {"success": True, "data": serialize_doc(history), "pagination": pagination}


# --------------------- Stock changes ---------------------

@router.put("/stock/bulk")
def bulk_update(req: BulkStockRequest, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    outcome = inventory.bulk_stock_update(db, [row.model_dump() for row in req.updates], admin.id)
    return {
        "success": True,
        "message": f"Updated {len(outcome['results'])} items, {len(outcome['errors'])} failed",
        "data": outcome,
    }


@router.put("/stock/{product_id}")
def update_stock(product_id: str, req: StockChange, request: Request, admin: AuthUser = Depends(require_admin),
                 db=Depends(get_db)):
    product = inventory.update_stock(db, product_id, req.variant_id, req.quantity, req.reason, req.reference,
                                     admin.id, request)
    return {"success": True, "message": "Stock updated successfully", "data": _stock_view(product)}


@router.post("/reserve")
def reserve(req: ReservationRequest, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = inventory.reserve_stock(db, req.product_id, req.variant_id, req.quantity, req.reference, admin.id)
    return {"success": True, "message": "Stock reserved", "data": _stock_view(product)}


@router.post("/release")
def release(req: ReservationRequest, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    product = inventory.release_reserved_stock(db, req.product_id, req.variant_id, req.quantity,
                                               req.reference, admin.id)
    return {"success": True, "message": "Reserved stock released", "data": _stock_view(product)}


@router.post("/check-availability")
def check_availability(req: AvailabilityRequest, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    results = []
    for item in req.items:
        outcome = inventory.check_stock_availability(db, item.product_id, item.variant_id, item.quantity)
        results.append({"product_id": item.product_id, "variant_id": item.variant_id,
                        "quantity": item.quantity, **outcome})
    return {"success": True, "all_available": all(r["available"] for r in results), "data": results}


@router.put("/reorder-settings/{product_id}")
def reorder_settings(product_id: str, req: ReorderSettings, admin: AuthUser = Depends(require_admin),
                     db=Depends(get_db)):
    settings = req.model_dump(exclude={"variant_id"})
    product = inventory.update_reorder_settings(db, product_id, req.variant_id, settings)
    return {"success": True, "message": "Reorder settings updated", "data": _stock_view(product)}
