import math
from datetime import datetime, timedelta
from typing import Optional

from bson import ObjectId

from config import SUPPORT_SLA_HOURS
from database import as_utc, utcnow

OPEN_STATUSES = ("open", "in_progress", "waiting_customer")
DONE_STATUSES = ("resolved", "closed")

TICKET_TIMESTAMPS = {
    "resolved": "resolved_at",
    "closed": "closed_at",
}


def sla_target(priority: str, opened_at: Optional[datetime] = None) -> datetime:
    opened_at = opened_at or utcnow()
    return opened_at + timedelta(hours=SUPPORT_SLA_HOURS.get(priority, SUPPORT_SLA_HOURS["medium"]))


def build_message(sender, message: str, sender_type: str = "customer",
                  is_internal: bool = False, attachments=None) -> dict:
    return {
        "_id": ObjectId(),
        "sender": sender,
        "sender_type": sender_type,
        "message": message,
        "attachments": attachments or [],
        "is_internal": is_internal,
        "is_read": sender_type != "customer",
        "sent_at": utcnow(),
    }


def is_overdue(ticket: dict, now: Optional[datetime] = None) -> bool:
    target = as_utc((ticket.get("sla") or {}).get("target_resolution_time"))
    if not target:
        return False
    return (now or utcnow()) > target and ticket.get("status") not in DONE_STATUSES


def with_virtuals(ticket: dict, include_internal: bool = True) -> dict:
    ticket = dict(ticket)
    now = utcnow()
    created = as_utc(ticket.get("created_at")) or now
    age = abs((now - created).total_seconds())
    messages = ticket.get("messages", [])
    if not include_internal:
        messages = [m for m in messages if not m.get("is_internal")]
        ticket["messages"] = messages
        ticket.pop("internal_notes", None)

    overdue = is_overdue(ticket, now)
    target = as_utc((ticket.get("sla") or {}).get("target_resolution_time"))
    ticket["formatted_ticket_number"] = f"#{ticket['ticket_number']}"
    ticket["age_in_hours"] = math.ceil(age / 3600)
    ticket["age_in_days"] = math.ceil(age / 86400)
    ticket["is_overdue"] = overdue
    ticket["overdue_hours"] = math.floor((now - target).total_seconds() / 3600) if overdue else 0
    ticket["last_message"] = messages[-1] if messages else None
    ticket["unread_messages_count"] = sum(
        1 for m in messages if m.get("sender_type") == "customer" and not m.get("is_read")
    )
    return ticket
