from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from config import AUDIT_RETENTION_DAYS
from database import get_db, serialize_doc, utcnow
from security import AuthUser, require_admin
from services import audit

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("")
def list_logs(user: Optional[str] = None, action: Optional[str] = None, resource: Optional[str] = None,
              status: Optional[str] = None, start_date: Optional[datetime] = None,
              end_date: Optional[datetime] = None, page: int = 1, limit: int = Query(50, ge=1, le=500),
              admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    filters = {"user": user, "action": action, "resource": resource, "status": status,
               "start_date": start_date, "end_date": end_date}
    logs, pagination = audit.get_logs(db, filters, page, limit)
    return {"success": True, "data": serialize_doc(logs), "pagination": pagination}


@router.get("/summary")
def summary(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
            admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    end_date = end_date or utcnow()
    start_date = start_date or end_date - timedelta(days=30)
    return {"success": True, "data": audit.get_summary(db, start_date, end_date),
            "period": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}}


@router.get("/dashboard/stats")
def dashboard_stats(days: int = Query(7, ge=1, le=365), admin: AuthUser = Depends(require_admin),
                    db=Depends(get_db)):
    return {"success": True, "data": audit.dashboard_stats(db, days)}


@router.delete("/cleanup")
def cleanup(request: Request, days: int = Query(AUDIT_RETENTION_DAYS, ge=1),
            admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    deleted = audit.clean_old_logs(db, days)
    audit.log_event(db, "audit_cleanup", "system", user_id=admin.id,
                    details={"retention_days": days, "deleted_count": deleted}, request=request)
    return {"success": True, "message": f"Removed {deleted} audit logs older than {days} days",
            "deleted_count": deleted}


@router.get("/user/{user_id}")
def user_logs(user_id: str, page: int = 1, limit: int = 50, admin: AuthUser = Depends(require_admin),
              db=Depends(get_db)):
    logs, pagination = audit.get_logs(db, {"user": user_id}, page, limit)
    return {"success": True, "data": serialize_doc(logs), "pagination": pagination}


@router.get("/resource/{resource}/{resource_id}")
def resource_logs(resource: str, resource_id: str, page: int = 1, limit: int = 50,
                  admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    logs, pagination = audit.get_logs(db, {"resource": resource, "resource_id": resource_id}, page, limit)
    return {"success": True, "data": serialize_doc(logs), "pagination": pagination}


@router.get("/{log_id}")
def get_log(log_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": serialize_doc(audit.get_log(db, log_id))}
