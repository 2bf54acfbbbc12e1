import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field

from database import get_db, serialize_doc, utcnow
from models import support as support_model
from schemas import Attachment, TicketCategory, TicketPriority, TicketStatus, TicketType
from security import AuthUser, get_current_user, get_optional_user, require_admin
from services import support as support_service
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/support", tags=["support"])


# --------------------- Models ---------------------

class TicketIn(BaseModel):
    subject: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    type: TicketType = "general"
    category: TicketCategory = "general_inquiry"
    priority: TicketPriority = "medium"
    tags: List[str] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)
    related_order: Optional[str] = None
    related_product: Optional[str] = None


class ContactRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    phone: Optional[str] = None
    subject: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    category: TicketCategory = "general_inquiry"


class TicketUpdate(BaseModel):
    priority: Optional[TicketPriority] = None
    type: Optional[TicketType] = None
    category: Optional[TicketCategory] = None
    tags: Optional[List[str]] = None
    internal_notes: Optional[str] = None


class StatusRequest(BaseModel):
    status: TicketStatus
    note: Optional[str] = None


class AssignRequest(BaseModel):
    assigned_to: str


class MessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    is_internal: bool = False
    attachments: List[Attachment] = Field(default_factory=list)


class EscalateRequest(BaseModel):
    level: int = Field(..., ge=1, le=5)
    reason: str = Field(..., min_length=1)


class SatisfactionRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=1000)


def _out(ticket: dict, user: Optional[AuthUser] = None) -> dict:
    include_internal = user is None or user.is_admin
    return serialize_doc(support_model.with_virtuals(ticket, include_internal))


# --------------------- Customer ---------------------

@router.post("", status_code=201)
def create_ticket(req: TicketIn, request: Request, user: AuthUser = Depends(get_current_user),
                  db=Depends(get_db)):
    ticket = support_service.create_ticket(db, user.id, req.model_dump(), request)
    return {"success": True, "message": "Support ticket created", "data": _out(ticket, user)}


@router.post("/contact", status_code=201)
def contact(req: ContactRequest, request: Request, user: Optional[AuthUser] = Depends(get_optional_user),
            db=Depends(get_db)):
    ticket = support_service.contact(db, req.model_dump(), user.id if user else None, request)
    return {
        "success": True,
        "message": "Thank you for contacting us. We will get back to you soon.",
        "data": {"ticket_number": ticket["ticket_number"]},
    }


@router.get("/my-tickets")
def my_tickets(status: Optional[TicketStatus] = None, page: int = 1, limit: int = 10,
               user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    tickets, pagination = support_service.list_tickets(db, {"customer": user.id, "status": status}, page, limit)
    return {"success": True, "data": [_out(t, user) for t in tickets], "pagination": pagination}


# --------------------- Admin lists ---------------------

@router.get("")
def list_tickets(status: Optional[TicketStatus] = None, priority: Optional[TicketPriority] = None,
                 type: Optional[TicketType] = None, category: Optional[TicketCategory] = None,
                 assigned_to: Optional[str] = None, search: Optional[str] = None,
                 sort_by: str = "created_at", sort_order: str = "desc", page: int = 1, limit: int = 20,
                 admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    filters = {"status": status, "priority": priority, "type": type, "category": category,
               "assigned_to": assigned_to, "search": search, "sort_by": sort_by, "sort_order": sort_order}
    tickets, pagination = support_service.list_tickets(db, filters, page, limit)
    return {"success": True, "data": [_out(t) for t in tickets], "pagination": pagination}


@router.get("/stats")
def ticket_stats(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                 admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": support_service.stats(db, start_date, end_date)}


@router.get("/overdue")
def overdue_tickets(admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    tickets = support_service.overdue(db)
    return {"success": True, "data": [_out(t) for t in tickets], "count": len(tickets)}


@router.get("/status/{status}")
def tickets_by_status(status: TicketStatus, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": [_out(t) for t in support_service.by_field(db, "status", status)]}


@router.get("/priority/{priority}")
def tickets_by_priority(priority: TicketPriority, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": [_out(t) for t in support_service.by_field(db, "priority", priority)]}


# --------------------- Single ticket ---------------------

@router.get("/{ticket_id}")
def get_ticket(ticket_id: str, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    ticket = support_service.get_ticket_for(db, ticket_id, user)
    if user.is_admin:
        for message in ticket.get("messages", []):
            if message.get("sender_type") == "customer" and not message.get("is_read"):
                db["support"].update_one(
                    {"_id": ticket["_id"], "messages": {"$elemMatch": {"_id": message["_id"]}}},
                    {"$set": {"messages.$.is_read": True}},
                )
                message["is_read"] = True
    return {"success": True, "data": _out(ticket, user)}


@router.put("/{ticket_id}")
def update_ticket(ticket_id: str, req: TicketUpdate, request: Request, admin: AuthUser = Depends(require_admin),
                  db=Depends(get_db)):
    ticket = support_service.get_ticket(db, ticket_id)
    updates = req.model_dump(exclude_none=True)
    if "priority" in updates and updates["priority"] != ticket["priority"]:
        updates["sla.target_resolution_time"] = support_model.sla_target(updates["priority"], ticket["created_at"])
    updates["updated_at"] = utcnow()
    db["support"].update_one({"_id": ticket["_id"]}, {"$set": updates})
    log_event(db, "support_ticket_update", "support", user_id=admin.id, resource_id=ticket["_id"],
              details={"fields": sorted(k for k in updates if k != "updated_at")}, request=request)
    return {"success": True, "data": _out(support_service.get_ticket(db, ticket_id))}


@router.put("/{ticket_id}/status")
def update_status(ticket_id: str, req: StatusRequest, request: Request, admin: AuthUser = Depends(require_admin),
                  db=Depends(get_db)):
    ticket = support_service.update_status(db, ticket_id, req.status, req.note, admin.id, request)
    return {"success": True, "data": _out(ticket)}


@router.put("/{ticket_id}/assign")
def assign_ticket(ticket_id: str, req: AssignRequest, request: Request, admin: AuthUser = Depends(require_admin),
                  db=Depends(get_db)):
    ticket = support_service.assign(db, ticket_id, req.assigned_to, admin.id, request)
    return {"success": True, "data": _out(ticket)}


@router.post("/{ticket_id}/messages")
def add_message(ticket_id: str, req: MessageRequest, user: AuthUser = Depends(get_current_user),
                db=Depends(get_db)):
    attachments = [a.model_dump() for a in req.attachments]
    ticket = support_service.add_message(db, ticket_id, user, req.message, req.is_internal, attachments)
    return {"success": True, "message": "Message added", "data": _out(ticket, user)}


@router.put("/{ticket_id}/escalate")
def escalate_ticket(ticket_id: str, req: EscalateRequest, request: Request,
                    admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    ticket = support_service.escalate(db, ticket_id, req.level, req.reason, admin.id, request)
    return {"success": True, "data": _out(ticket)}


@router.post("/{ticket_id}/satisfaction")
def rate_ticket(ticket_id: str, req: SatisfactionRequest, user: AuthUser = Depends(get_current_user),
                db=Depends(get_db)):
    ticket = support_service.add_satisfaction(db, ticket_id, user, req.rating, req.feedback)
    return {"success": True, "message": "Thank you for your feedback", "data": _out(ticket, user)}
