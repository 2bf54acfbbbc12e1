import logging
import platform
import sys
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from database import get_db, serialize_doc, utcnow
from models import order as order_model
from models import product as product_model
from schemas import SettingsCategory
from security import AuthUser, hash_password, require_admin, verify_password
from services import inventory
from services import orders as order_service
from services import settings as settings_service
from services import support as support_service
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

STARTED_AT = time.time()


# --------------------- Models ---------------------

class SettingsUpdate(BaseModel):
    settings: Dict[str, Any] = Field(..., min_length=1)


class BulkSettingsUpdate(BaseModel):
    settings: Dict[SettingsCategory, Dict[str, Any]] = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


def _month_start(now):
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _growth(current: float, previous: float) -> float:
    if not previous:
        return 0
    return round((current - previous) / previous * 100, 2)


# --------------------- Dashboard & analytics ---------------------

@router.get("/dashboard")
def dashboard(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    now = utcnow()
    month_start = _month_start(now)
    last_month_start = _month_start(month_start - timedelta(days=1))
    this_month = order_service.sales_stats(db, month_start, now)
    last_month = order_service.sales_stats(db, last_month_start, month_start)
    new_users = db["user"].count_documents({"created_at": {"$gte": month_start}})
    last_users = db["user"].count_documents({"created_at": {"$gte": last_month_start, "$lt": month_start}})
    status_counts = db["order"].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
    recent = db["order"].find({}).sort("created_at", -1).limit(5)
    overall = order_service.sales_stats(db, now - timedelta(days=3650), now)
    return {"success": True, "data": {
        "overview": {
            "total_users": db["user"].count_documents({}),
            "total_products": db["product"].count_documents({}),
            "total_orders": db["order"].count_documents({}),
            "total_categories": db["category"].count_documents({}),
            "total_revenue": overall["total_revenue"],
            "average_order_value": overall["average_order_value"],
        },
        "this_month": {
            "users": new_users,
            "orders": this_month["total_orders"],
            "revenue": this_month["total_revenue"],
        },
        "growth": {
            "users": _growth(new_users, last_users),
            "orders": _growth(this_month["total_orders"], last_month["total_orders"]),
            "revenue": _growth(this_month["total_revenue"], last_month["total_revenue"]),
        },
        "recent_orders": [serialize_doc(order_model.with_virtuals(o)) for o in recent],
        "order_status": {row["_id"]: row["count"] for row in status_counts},
        "low_stock_count": len(inventory.get_low_stock_alerts(db)),
        "open_tickets": db["support"].count_documents({"status": {"$in": ["open", "in_progress"]}}),
        "daily_sales": order_service.revenue_by_day(db, 7),
    }}


@router.get("/analytics/sales")
def sales_analytics(days: int = Query(30, ge=1, le=365), admin: AuthUser = Depends(require_admin),
                    db=Depends(get_db)):
    now = utcnow()
    since = now - timedelta(days=days)
    top: Dict[str, dict] = {}
    for order in db["order"].find({"created_at": {"$gte": since}, "status": {"$nin": ["cancelled", "refunded"]}}):
        for item in order["items"]:
            row = top.setdefault(str(item["product"]), {"product_id": str(item["product"]), "name": item["name"],
                                                        "quantity": 0, "revenue": 0.0})
            row["quantity"] += item["quantity"]
            row["revenue"] = order_model.money(row["revenue"] + item["total_price"])
    return {"success": True, "data": {
        "summary": order_service.sales_stats(db, since, now),
        "daily": order_service.revenue_by_day(db, days),
        "top_products": sorted(top.values(), key=lambda r: r["quantity"], reverse=True)[:10],
    }}


@router.get("/analytics/users")
def user_analytics(days: int = Query(30, ge=1, le=365), admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    since = utcnow() - timedelta(days=days)
    daily: Dict[str, int] = {}
    for user in db["user"].find({"created_at": {"$gte": since}}, {"created_at": 1}):
        day = user["created_at"].strftime("%Y-%m-%d")
        daily[day] = daily.get(day, 0) + 1
    buyers = db["order"].distinct("customer", {"created_at": {"$gte": since}})
    return {"success": True, "data": {
        "total_users": db["user"].count_documents({}),
        "active_users": db["user"].count_documents({"is_active": True}),
        "new_users": sum(daily.values()),
        "customers_with_orders": len(buyers),
        "registrations": [{"date": day, "count": daily[day]} for day in sorted(daily)],
    }}


@router.get("/analytics/products")
def product_analytics(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    products = list(db["product"].find({}))
    by_status: Dict[str, int] = {}
    for p in products:
        by_status[p["status"]] = by_status.get(p["status"], 0) + 1
    top = sorted(products, key=lambda p: p.get("sales_count", 0), reverse=True)[:10]
    return {"success": True, "data": {
        "total_products": len(products),
        "by_status": by_status,
        "out_of_stock": sum(1 for p in products if product_model.total_stock(p) == 0),
        "low_stock": sum(1 for p in products if product_model.is_low_stock(p)),
        "top_sellers": [{"id": str(p["_id"]), "name": p["name"], "sales_count": p.get("sales_count", 0),
                         "view_count": p.get("view_count", 0)} for p in top],
        "inventory": inventory.dashboard_stats(db),
    }}


@router.get("/system/info")
def system_info(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": {
        "system": {
            "python_version": sys.version.split()[0],
            "platform": platform.platform(),
            "uptime_seconds": round(time.time() - STARTED_AT),
        },
        "database": {
            "collections": sorted(db.list_collection_names()),
            "total_users": db["user"].count_documents({}),
            "total_products": db["product"].count_documents({}),
            "total_orders": db["order"].count_documents({}),
            "total_categories": db["category"].count_documents({}),
        },
        "timestamp": utcnow().isoformat(),
    }}


# --------------------- Settings ---------------------

@router.get("/settings/{category}")
def get_settings(category: SettingsCategory, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": settings_service.get_settings(db, category) or {}}


@router.put("/settings/{category}")
def update_settings(category: SettingsCategory, req: SettingsUpdate, request: Request,
                    admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    doc = settings_service.update_settings(db, category, req.settings, admin.id, request)
    return {"success": True, "message": "Settings updated successfully",
            "data": {"settings": doc["settings"], "version": doc["version"]}}


@router.put("/settings")
def bulk_update_settings(req: BulkSettingsUpdate, request: Request, admin: AuthUser = Depends(require_admin),
                         db=Depends(get_db)):
    versions = settings_service.bulk_update(db, req.settings, admin.id, request)
    return {"success": True, "message": "Settings updated successfully", "data": versions}


# --------------------- Notifications & account ---------------------

@router.get("/notifications")
def notifications(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    now = utcnow()
    items = []
    low_stock = inventory.get_low_stock_alerts(db)
    if low_stock:
        items.append({"type": "stock", "title": "Low Stock Alert",
                      "message": f"{len(low_stock)} items are running low on stock", "count": len(low_stock)})
    pending = db["order"].count_documents({"status": "pending"})
    if pending:
        items.append({"type": "order", "title": "Pending Orders",
                      "message": f"{pending} orders are waiting to be processed", "count": pending})
    overdue = support_service.overdue(db)
    if overdue:
        items.append({"type": "support", "title": "Overdue Tickets",
                      "message": f"{len(overdue)} support tickets are past their SLA", "count": len(overdue)})
    for item in items:
        item["timestamp"] = now.isoformat()
        item["read"] = False
    return {"success": True, "data": items}


@router.put("/change-password")
def change_password(req: ChangePasswordRequest, request: Request, admin: AuthUser = Depends(require_admin),
                    db=Depends(get_db)):
    user: Optional[dict] = db["user"].find_one({"_id": admin.oid})
    if not verify_password(req.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one({"_id": admin.oid},
                          {"$set": {"password_hash": hash_password(req.new_password), "updated_at": utcnow()}})
    log_event(db, "password_change", "security", user_id=admin.id, resource_id=admin.oid, request=request)
    return {"success": True, "message": "Password changed successfully"}
