"""Audit trail: records who did what to which resource."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Request
from pymongo.errors import PyMongoError

from database import paginate, to_object_id, utcnow
from exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def request_meta(request: Optional[Request]) -> Dict[str, Optional[str]]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return {"ip_address": ip, "user_agent": request.headers.get("user-agent")}


def log_event(db, action: str, resource: str, user_id: Any = None, resource_id: Any = None,
              details: Optional[dict] = None, request: Optional[Request] = None,
              status: str = "success", error_message: Optional[str] = None) -> Optional[str]:
    """Write an audit record. Failing to write is logged, never raised."""
    try:
        entry = {
            "user": to_object_id(user_id) if user_id else None,
            "action": action,
            "resource": resource,
            "resource_id": str(resource_id) if resource_id is not None else None,
            "details": details or {},
            "status": status,
            "error_message": error_message,
            "timestamp": utcnow(),
            **request_meta(request),
        }
        result = db["auditlog"].insert_one(entry)
    except (PyMongoError, ValidationError):
        logger.exception("Error creating audit log for %s on %s", action, resource)
        return None
    return str(result.inserted_id)


def _date_range(start_date: Optional[datetime], end_date: Optional[datetime]) -> Dict[str, datetime]:
    rng = {}
    if start_date:
        rng["$gte"] = start_date
    if end_date:
        rng["$lte"] = end_date
    return rng


def get_logs(db, filters: Dict[str, Any], page: int = 1, limit: int = 50):
    query: Dict[str, Any] = {}
    if filters.get("user"):
        query["user"] = to_object_id(filters["user"], "user id")
    for key in ("action", "resource", "status", "ip_address"):
        if filters.get(key):
            query[key] = filters[key]
    if filters.get("resource_id"):
        query["resource_id"] = str(filters["resource_id"])
    rng = _date_range(filters.get("start_date"), filters.get("end_date"))
    if rng:
        query["timestamp"] = rng
    return paginate(db["auditlog"], query, page, limit, sort=[("timestamp", -1)])


def get_log(db, log_id: str) -> dict:
    log = db["auditlog"].find_one({"_id": to_object_id(log_id, "audit log id")})
    if not log:
        raise NotFoundError("Audit log not found")
    return log


def get_summary(db, start_date: datetime, end_date: datetime):
    """Counts grouped by action, with a per-status breakdown, busiest first"""
    rows = db["auditlog"].aggregate([
        {"$match": {"timestamp": _date_range(start_date, end_date)}},
        {"$group": {"_id": {"action": "$action", "status": "$status"}, "count": {"$sum": 1}}},
    ])
    summary: Dict[str, dict] = {}
    for row in rows:
        action = row["_id"]["action"]
        entry = summary.setdefault(action, {"action": action, "statuses": [], "total_count": 0})
        entry["statuses"].append({"status": row["_id"]["status"], "count": row["count"]})
        entry["total_count"] += row["count"]
    return sorted(summary.values(), key=lambda e: e["total_count"], reverse=True)


def clean_old_logs(db, retention_days: int) -> int:
    cutoff = utcnow() - timedelta(days=retention_days)
    result = db["auditlog"].delete_many({"timestamp": {"$lt": cutoff}})
    logger.info("Removed %s audit logs older than %s days", result.deleted_count, retention_days)
    return result.deleted_count


def dashboard_stats(db, days: int = 7) -> dict:
    since = utcnow() - timedelta(days=days)
    query = {"timestamp": {"$gte": since}}
    by_resource = db["auditlog"].aggregate([
        {"$match": query},
        {"$group": {"_id": "$resource", "count": {"$sum": 1}}},
    ])
    return {
        "period_days": days,
        "total_events": db["auditlog"].count_documents(query),
        "failed_events": db["auditlog"].count_documents({**query, "status": "failure"}),
        "failed_logins": db["auditlog"].count_documents({**query, "action": "failed_login_attempt"}),
        "by_resource": {row["_id"]: row["count"] for row in by_resource},
    }
