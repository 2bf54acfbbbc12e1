import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from database import get_db, serialize_doc
from models import content as content_model
from schemas import Banner, ContentStatus, ContentType, Faq, Page, Promotion
from security import AuthUser, require_admin
from services import cms

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cms", tags=["cms"])


# --------------------- Models ---------------------

class ContentIn(BaseModel):
    type: ContentType
    title: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = None
    content: str
    excerpt: Optional[str] = Field(None, max_length=500)
    images: List[Dict[str, Any]] = Field(default_factory=list)
    banner: Optional[Banner] = None
    promotion: Optional[Promotion] = None
    page: Optional[Page] = None
    faq: Optional[Faq] = None
    status: ContentStatus = "draft"
    priority: int = Field(0, ge=0)
    tags: List[str] = Field(default_factory=list)
    seo: Dict[str, Any] = Field(default_factory=dict)
    settings: Optional[Dict[str, Any]] = None


class ContentUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = None
    content: Optional[str] = None
    excerpt: Optional[str] = Field(None, max_length=500)
    images: Optional[List[Dict[str, Any]]] = None
    banner: Optional[Banner] = None
    promotion: Optional[Promotion] = None
    page: Optional[Page] = None
    faq: Optional[Faq] = None
    status: Optional[ContentStatus] = None
    priority: Optional[int] = Field(None, ge=0)
    tags: Optional[List[str]] = None
    seo: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None


class BulkStatusRequest(BaseModel):
    content_ids: List[str] = Field(..., min_length=1)
    status: ContentStatus


class TrackRequest(BaseModel):
    action: Literal["view", "click", "conversion"]


def _out(content: dict) -> dict:
    return serialize_doc(content_model.with_virtuals(content))


# --------------------- Public ---------------------

@router.get("/public/banners")
def public_banners(position: Optional[str] = None, db=Depends(get_db)):
    return {"success": True, "data": [_out(c) for c in cms.active_banners(db, position)]}


@router.get("/public/promotions")
def public_promotions(db=Depends(get_db)):
    return {"success": True, "data": [_out(c) for c in cms.active_promotions(db)]}


@router.get("/public/pages")
def public_pages(db=Depends(get_db)):
    pages = cms.published_pages(db)
    return {"success": True, "data": [{
        "id": str(p["_id"]), "title": p["title"], "slug": p.get("slug"), "excerpt": p.get("excerpt"),
    } for p in pages]}


@router.get("/public/pages/{slug}")
def public_page(slug: str, db=Depends(get_db)):
    return {"success": True, "data": _out(cms.page_by_slug(db, slug))}


@router.get("/public/faq")
def public_faq(category: str = "general", db=Depends(get_db)):
    return {"success": True, "data": [_out(c) for c in cms.faq_by_category(db, category)]}


@router.get("/public/faq/categories")
def faq_categories(db=Depends(get_db)):
    return {"success": True, "data": cms.faq_categories(db)}


@router.post("/public/{content_id}/track")
def track(content_id: str, req: TrackRequest, db=Depends(get_db)):
    return {"success": True, "data": serialize_doc(cms.track(db, content_id, req.action))}


# --------------------- Admin ---------------------

@router.get("/analytics/overview")
def analytics_overview(type: Optional[ContentType] = None, start_date: Optional[datetime] = None,
                       end_date: Optional[datetime] = None, admin: AuthUser = Depends(require_admin),
                       db=Depends(get_db)):
    return {"success": True, "data": cms.analytics_overview(db, type, start_date, end_date)}


@router.put("/bulk/status")
def bulk_status(req: BulkStatusRequest, request: Request, admin: AuthUser = Depends(require_admin),
                db=Depends(get_db)):
    count = cms.bulk_update_status(db, req.content_ids, req.status, admin.id, request)
    return {"success": True, "message": f"Updated {count} content items", "modified_count": count}


@router.get("")
def list_content(type: Optional[ContentType] = None, status: Optional[ContentStatus] = None,
                 search: Optional[str] = None, sort_by: str = "created_at", sort_order: str = "desc",
                 page: int = 1, limit: int = 20, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    filters = {"type": type, "status": status, "search": search, "sort_by": sort_by, "sort_order": sort_order}
    items, pagination = cms.list_content(db, filters, page, limit)
    return {"success": True, "data": [_out(c) for c in items], "pagination": pagination}


@router.post("", status_code=201)
def create_content(req: ContentIn, request: Request, admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    data = req.model_dump(exclude_none=True)
    content = cms.create_content(db, data, admin.id, request)
    return {"success": True, "data": _out(content)}


@router.get("/{content_id}")
def get_content(content_id: str, admin: AuthUser = Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "data": _out(cms.get_content(db, content_id))}


@router.put("/{content_id}")
def update_content(content_id: str, req: ContentUpdate, request: Request, admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    content = cms.update_content(db, content_id, req.model_dump(exclude_none=True), admin.id, request)
    return {"success": True, "data": _out(content)}


@router.delete("/{content_id}")
def delete_content(content_id: str, request: Request, admin: AuthUser = Depends(require_admin),
                   db=Depends(get_db)):
    cms.delete_content(db, content_id, admin.id, request)
    return {"success": True, "message": "Content deleted successfully"}


@router.post("/{content_id}/duplicate", status_code=201)
def duplicate_content(content_id: str, request: Request, admin: AuthUser = Depends(require_admin),
                      db=Depends(get_db)):
    return {"success": True, "data": _out(cms.duplicate_content(db, content_id, admin.id, request))}
