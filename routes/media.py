"""Media library: metadata for files stored elsewhere, plus where each file is used."""
import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from database import create_document, get_db, paginate, serialize_doc, to_object_id, utcnow
from exceptions import NotFoundError
from schemas import Media, MediaType
from security import AuthUser, require_admin
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/media", tags=["media"])


class MediaIn(BaseModel):
    file_name: str = Field(..., min_length=1)
    original_name: Optional[str] = None
    file_type: MediaType = "image"
    mime_type: str
    file_size: int = Field(..., ge=0)
    url: str
    tags: List[str] = Field(default_factory=list)
    alt_text: Optional[str] = None
    caption: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MediaUpdate(BaseModel):
    alt_text: Optional[str] = None
    caption: Optional[str] = None
    tags: Optional[List[str]] = None


class UsageRequest(BaseModel):
    entity_type: str = Field(..., pattern="^(product|category|content|user)$")
    entity_id: str
    context: str = ""


def file_extension(file_name: str) -> str:
    return file_name.rsplit(".", 1)[-1].lower()


def _out(media: dict) -> dict:
    data = serialize_doc(media)
    data["file_extension"] = file_extension(media["file_name"])
    data["is_in_use"] = bool(media.get("usage"))
    return data


def _load(db, media_id: str) -> dict:
    media = db["media"].find_one({"_id": to_object_id(media_id, "media id")})
    if not media:
        raise NotFoundError("Media not found")
    return media


@router.post("", status_code=201)
def register_media(req: MediaIn, request: Request, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    data = req.model_dump()
    data["original_name"] = data["original_name"] or data["file_name"]
    data["tags"] = [t.strip().lower() for t in data["tags"]]
    media_id = create_document(db, "media", Media(uploaded_by=admin.oid, **data))
    log_event(db, "media_upload", "media", user_id=admin.id, resource_id=media_id,
              details={"file_name": req.file_name, "file_type": req.file_type}, request=request)
    return {"success": True, "data": _out(_load(db, media_id))}


@router.get("")
def list_media(file_type: Optional[MediaType] = None, page: int = 1, limit: int = 50,
               admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    query: Dict[str, Any] = {"is_active": True}
    if file_type:
        query["file_type"] = file_type
    items, pagination = paginate(db["media"], query, page, limit, sort=[("created_at", -1)])
    return {"success": True, "data": [_out(m) for m in items], "pagination": pagination}


@router.get("/search")
def search_media(q: str = Query(..., min_length=1), limit: int = 50, admin: AuthUser = Depends(require_admin),
                 db=Depends(get_db)):
    pattern = {"$regex": re.escape(q), "$options": "i"}
    items = db["media"].find({
        "is_active": True,
        "$or": [{"original_name": pattern}, {"file_name": pattern}, {"tags": pattern},
                {"alt_text": pattern}, {"caption": pattern}],
    }).sort("created_at", -1).limit(limit)
    return {"success": True, "data": [_out(m) for m in items]}


@router.get("/{media_id}")
def get_media(media_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": _out(_load(db, media_id))}


@router.put("/{media_id}")
def update_media(media_id: str, req: MediaUpdate, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    media = _load(db, media_id)
    updates = req.model_dump(exclude_none=True)
    if "tags" in updates:
        updates["tags"] = [t.strip().lower() for t in updates["tags"]]
    updated = db["media"].find_one_and_update(
        {"_id": media["_id"]}, {"$set": {**updates, "updated_at": utcnow()}}, return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "data": _out(updated)}


@router.delete("/{media_id}")
def deactivate_media(media_id: str, request: Request, admin: AuthUser = Depends(require_admin),
                     db=Depends(get_db)):
    media = _load(db, media_id)
    db["media"].update_one({"_id": media["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    if media.get("usage"):
        logger.warning("Media %s deactivated while still in use (%s references)", media["file_name"],
                       len(media["usage"]))
    log_event(db, "media_delete", "media", user_id=admin.id, resource_id=media["_id"],
              details={"file_name": media["file_name"]}, request=request)
    return {"success": True, "message": "Media deactivated"}


@router.post("/{media_id}/usage")
def add_usage(media_id: str, req: UsageRequest, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    media = _load(db, media_id)
    entity_id = to_object_id(req.entity_id, "entity id")
    if not any(u["entity_type"] == req.entity_type and u["entity_id"] == entity_id for u in media.get("usage", [])):
        db["media"].update_one({"_id": media["_id"]}, {"$push": {"usage": {
            "entity_type": req.entity_type, "entity_id": entity_id, "context": req.context,
        }}})
    return {"success": True, "data": _out(_load(db, media_id))}


@router.delete("/{media_id}/usage/{entity_type}/{entity_id}")
def remove_usage(media_id: str, entity_type: str, entity_id: str, admin: AuthUser = Depends(require_admin),
                 db=Depends(get_db)):
    media = _load(db, media_id)
    db["media"].update_one({"_id": media["_id"]}, {"$pull": {"usage": {
        "entity_type": entity_type, "entity_id": to_object_id(entity_id, "entity id"),
    }}})
    return {"success": True, "data": _out(_load(db, media_id))}
