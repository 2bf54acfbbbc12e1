"""Support tickets: customer requests, staff replies, SLA tracking."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import as_utc, create_document, next_sequence, paginate, to_object_id, utcnow
from exceptions import NotFoundError, PermissionDeniedError, ValidationError
from models import support as support_model
from schemas import Support
from services.audit import log_event

logger = logging.getLogger(__name__)


def get_ticket(db, ticket_id: Any) -> dict:
    ticket = db["support"].find_one({"_id": to_object_id(ticket_id, "ticket id")})
    if not ticket:
        raise NotFoundError("Ticket not found")
    return ticket


def get_ticket_for(db, ticket_id: Any, user) -> dict:
    ticket = get_ticket(db, ticket_id)
    if not user.is_admin and str(ticket.get("customer")) != user.id:
        raise PermissionDeniedError("Access denied")
    return ticket


def _history(status: str, note: Optional[str], user_id: Any) -> dict:
    return {"status": status, "timestamp": utcnow(), "note": note,
            "updated_by": to_object_id(user_id) if user_id else None}


def _open(db, data: dict, customer_id: Any, customer_info: dict, source: str, request=None) -> dict:
    now = utcnow()
    ticket_number = f"TKT{next_sequence(db, 'ticket'):06d}"
    doc = Support(
        ticket_number=ticket_number,
        customer=to_object_id(customer_id) if customer_id else None,
        customer_info=customer_info,
        type=data.get("type") or "general",
        priority=data.get("priority") or "medium",
        subject=data["subject"],
        description=data["description"],
        category=data.get("category") or "general_inquiry",
        tags=data.get("tags") or [],
        attachments=data.get("attachments") or [],
        related_order=to_object_id(data["related_order"], "order id") if data.get("related_order") else None,
        related_product=to_object_id(data["related_product"], "product id") if data.get("related_product") else None,
        source=source,
        status_history=[_history("open", "Ticket created", customer_id)],
        sla={"target_resolution_time": support_model.sla_target(data.get("priority") or "medium", now)},
        last_activity=now,
    ).model_dump()
    ticket_id = create_document(db, "support", doc)
    logger.info("Support ticket %s opened (%s)", ticket_number, doc["priority"])
    log_event(db, "support_ticket_create", "support", user_id=customer_id, resource_id=ticket_id,
              details={"ticket_number": ticket_number, "type": doc["type"], "priority": doc["priority"]},
              request=request)
    return get_ticket(db, ticket_id)


def create_ticket(db, user_id: Any, data: dict, request=None) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise NotFoundError("User not found")
    info = {"first_name": user["first_name"], "last_name": user["last_name"],
            "email": user["email"], "phone": user.get("phone")}
    return _open(db, data, user["_id"], info, data.get("source") or "web", request)


def contact(db, data: dict, user_id: Any = None, request=None) -> dict:
    """Public contact form; the ticket joins an account only when its owner is signed in"""
    info = {"first_name": data["first_name"], "last_name": data["last_name"],
            "email": data["email"].lower(), "phone": data.get("phone")}
    customer = to_object_id(user_id) if user_id else None
    return _open(db, {**data, "type": data.get("type") or "general"}, customer, info, "web", request)


def list_tickets(db, filters: Dict[str, Any], page: int = 1, limit: int = 50):
    query: Dict[str, Any] = {}
    for key in ("status", "priority", "type", "category"):
        if filters.get(key):
            query[key] = filters[key]
    if filters.get("assigned_to"):
        query["assigned_to"] = to_object_id(filters["assigned_to"], "assignee id")
    if filters.get("customer"):
        query["customer"] = to_object_id(filters["customer"], "customer id")
    if filters.get("search"):
        pattern = {"$regex": filters["search"], "$options": "i"}
        query["$or"] = [{"subject": pattern}, {"description": pattern}, {"ticket_number": pattern},
                        {"customer_info.email": pattern}]
    direction = 1 if filters.get("sort_order") == "asc" else -1
    return paginate(db["support"], query, page, limit, sort=[(filters.get("sort_by") or "created_at", direction)])


def _update(db, ticket: dict, updates: dict, history: Optional[dict] = None,
            push: Optional[dict] = None) -> dict:
    update: Dict[str, Any] = {"$set": {**updates, "updated_at": utcnow()}}
    pushes = dict(push or {})
    if history:
        pushes["status_history"] = history
    if pushes:
        update["$push"] = pushes
    return db["support"].find_one_and_update({"_id": ticket["_id"]}, update,
                                             return_document=ReturnDocument.AFTER)


def update_status(db, ticket_id: Any, status: str, note: Optional[str], user_id: Any, request=None) -> dict:
    ticket = get_ticket(db, ticket_id)
    now = utcnow()
    updates: Dict[str, Any] = {"status": status}
    if status in support_model.TICKET_TIMESTAMPS:
        updates[support_model.TICKET_TIMESTAMPS[status]] = now
    if status in support_model.DONE_STATUSES and not (ticket.get("sla") or {}).get("actual_resolution_time"):
        updates["sla.actual_resolution_time"] = now
    updated = _update(db, ticket, updates, _history(status, note, user_id))
    log_event(db, "support_ticket_status_update", "support", user_id=user_id, resource_id=ticket["_id"],
              details={"ticket_number": ticket["ticket_number"], "old_status": ticket["status"],
                       "new_status": status}, request=request)
    return updated


def assign(db, ticket_id: Any, assignee_id: Any, user_id: Any, request=None) -> dict:
    ticket = get_ticket(db, ticket_id)
    assignee = db["user"].find_one({"_id": to_object_id(assignee_id, "assignee id"), "role": "admin"})
    if not assignee:
        raise ValidationError("Tickets can only be assigned to staff members")
    updates: Dict[str, Any] = {"assigned_to": assignee["_id"], "assigned_at": utcnow()}
    if ticket["status"] == "open":
        updates["status"] = "in_progress"
    name = f"{assignee['first_name']} {assignee['last_name']}"
    updated = _update(db, ticket, updates,
                      _history(updates.get("status", ticket["status"]), f"Ticket assigned to {name}", user_id))
    log_event(db, "support_ticket_assign", "support", user_id=user_id, resource_id=ticket["_id"],
              details={"ticket_number": ticket["ticket_number"], "assigned_to": str(assignee["_id"])},
              request=request)
    return updated


def add_message(db, ticket_id: Any, user, message: str, is_internal: bool = False,
                attachments: Optional[List[dict]] = None) -> dict:
    ticket = get_ticket_for(db, ticket_id, user)
    if ticket["status"] == "closed":
        raise ValidationError("Cannot add messages to a closed ticket")
    sender_type = "admin" if user.is_admin else "customer"
    entry = support_model.build_message(to_object_id(user.id), message, sender_type,
                                        is_internal and user.is_admin, attachments)
    updates: Dict[str, Any] = {"last_activity": entry["sent_at"]}
    history = None
    if sender_type == "customer" and ticket["status"] in ("waiting_customer", "resolved"):
        updates["status"] = "open"
        history = _history("open", "Customer replied", user.id)
    elif sender_type == "admin" and not entry["is_internal"] and ticket["status"] == "open":
        updates["status"] = "waiting_customer"
        history = _history("waiting_customer", "Awaiting customer reply", user.id)
    return _update(db, ticket, updates, history, push={"messages": entry})


def escalate(db, ticket_id: Any, level: int, reason: str, user_id: Any, request=None) -> dict:
    ticket = get_ticket(db, ticket_id)
    if not 1 <= level <= 5:
        raise ValidationError("Escalation level must be between 1 and 5")
    if level <= ticket.get("escalation_level", 1):
        raise ValidationError("Escalation level must be higher than the current level")
    updates: Dict[str, Any] = {"escalation_level": level}
    if level >= 3 and ticket["priority"] != "urgent":
        updates["priority"] = "urgent"
        updates["sla.target_resolution_time"] = support_model.sla_target("urgent")
    updated = _update(db, ticket, updates,
                      _history(ticket["status"], f"Ticket escalated to level {level}: {reason}", user_id))
    logger.warning("Ticket %s escalated to level %s", ticket["ticket_number"], level)
    log_event(db, "support_ticket_escalate", "support", user_id=user_id, resource_id=ticket["_id"],
              details={"ticket_number": ticket["ticket_number"], "level": level, "reason": reason},
              request=request)
    return updated


def add_satisfaction(db, ticket_id: Any, user, rating: int, feedback: Optional[str] = None) -> dict:
    ticket = get_ticket_for(db, ticket_id, user)
    if ticket["status"] not in support_model.DONE_STATUSES:
        raise ValidationError("Satisfaction can only be rated for resolved or closed tickets")
    if not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    return _update(db, ticket, {"customer_satisfaction": {
        "rating": rating, "feedback": feedback, "submitted_at": utcnow(),
    }})


def overdue(db) -> List[dict]:
    return list(db["support"].find({
        "sla.target_resolution_time": {"$lt": utcnow()},
        "status": {"$nin": list(support_model.DONE_STATUSES)},
    }).sort("sla.target_resolution_time", 1))


def by_field(db, field: str, value: str) -> List[dict]:
    return list(db["support"].find({field: value}).sort("created_at", -1))


def stats(db, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> Dict[str, Any]:
    end_date = end_date or utcnow()
    start_date = start_date or end_date - timedelta(days=30)
    tickets = list(db["support"].find({"created_at": {"$gte": start_date, "$lte": end_date}}))
    resolution_hours = [
        (as_utc(t["resolved_at"]) - as_utc(t["created_at"])).total_seconds() / 3600
        for t in tickets if t.get("resolved_at")
    ]
    ratings = [t["customer_satisfaction"]["rating"] for t in tickets if t.get("customer_satisfaction")]
    by_priority: Dict[str, int] = {}
    for t in tickets:
        by_priority[t["priority"]] = by_priority.get(t["priority"], 0) + 1
    return {
        "total_tickets": len(tickets),
        "open_tickets": sum(1 for t in tickets if t["status"] in support_model.OPEN_STATUSES),
        "resolved_tickets": sum(1 for t in tickets if t["status"] == "resolved"),
        "closed_tickets": sum(1 for t in tickets if t["status"] == "closed"),
        "overdue_tickets": sum(1 for t in tickets if support_model.is_overdue(t)),
        "avg_resolution_hours": round(sum(resolution_hours) / len(resolution_hours), 2) if resolution_hours else 0,
        "avg_satisfaction": round(sum(ratings) / len(ratings), 2) if ratings else 0,
        "by_priority": by_priority,
    }
