"""Store settings, versioned per category with a backup taken before each change."""
import logging
import time
from typing import Any, Dict, Optional

from database import create_document, to_object_id, utcnow
from exceptions import ValidationError
from schemas import Settings
from services.audit import log_event

logger = logging.getLogger(__name__)

CATEGORIES = ("general", "notifications", "security", "payment", "email", "shipping", "tax")


def _check_category(category: str) -> None:
    if category not in CATEGORIES:
        raise ValidationError(f"Unknown settings category '{category}'")


def _active(db, category: str) -> Optional[dict]:
    return db["settings"].find_one({"category": category, "is_active": True}, sort=[("updated_at", -1)])


def get_settings(db, category: str) -> Optional[Dict[str, Any]]:
    _check_category(category)
    current = _active(db, category)
    return current["settings"] if current else None


def _backup(db, current: dict) -> str:
    backup = {
        "category": f"{current['category']}_backup_{int(time.time() * 1000)}",
        "settings": current["settings"],
        "updated_by": current["updated_by"],
        "is_active": False,
        "version": current["version"],
        "metadata": {
            **(current.get("metadata") or {}),
            "description": f"Backup of {current['category']} settings created at {utcnow().isoformat()}",
        },
    }
    return create_document(db, "settings", backup)


def update_settings(db, category: str, values: Dict[str, Any], user_id: Any, request=None) -> dict:
    """Merge ``values`` into the active settings of a category and bump its version"""
    _check_category(category)
    current = _active(db, category)
    if current:
        _backup(db, current)
        merged = {**current["settings"], **values}
        db["settings"].update_one({"_id": current["_id"]}, {
            "$set": {"settings": merged, "updated_by": to_object_id(user_id), "updated_at": utcnow()},
            "$inc": {"version": 1},
        })
        doc_id = current["_id"]
    else:
        doc_id = to_object_id(create_document(db, "settings", Settings(
            category=category, settings=values, updated_by=to_object_id(user_id),
        )))
    log_event(db, "settings_update", "settings", user_id=user_id, resource_id=doc_id,
              details={"category": category, "keys": sorted(values)}, request=request)
    logger.info("Settings '%s' updated", category)
    return db["settings"].find_one({"_id": doc_id})


def bulk_update(db, payload: Dict[str, Dict[str, Any]], user_id: Any, request=None) -> Dict[str, int]:
    for category in payload:
        _check_category(category)
    return {
        category: update_settings(db, category, values, user_id, request)["version"]
        for category, values in payload.items()
    }
