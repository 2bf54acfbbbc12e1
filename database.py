"""
Database helpers

MongoDB access for the API. The connection is configured from DATABASE_URL and
DATABASE_NAME; when either is missing ``db`` stays ``None`` and handlers answer
with "Database not configured".

Each collection is named after its schema in lowercase (User -> "user").
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

from config import DATABASE_NAME, DATABASE_URL
from exceptions import ValidationError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the configured database"""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


# --------------------- Time ---------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive UTC datetimes unless the client is tz aware
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --------------------- Documents ---------------------

def to_object_id(value: Union[str, ObjectId], what: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {what}")


def serialize_doc(value: Any) -> Any:
    """Make a Mongo document JSON friendly: ObjectIds become strings and
    ``_id`` is exposed as ``id``."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out
    return value


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id"""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def update_and_fetch(collection, query: dict, update: dict) -> Optional[dict]:
    """Apply a conditional update and re-read the document.

    Used for positional (``array.$.field``) updates. Returns None when ``query``
    matched nothing, so the caller can tell a failed guard from a success.
    """
    result = collection.update_one(query, update)
    if not result.matched_count:
        return None
    return collection.find_one({"_id": query["_id"]})


def paginate(collection, query: dict, page: int = 1, limit: int = 50,
             sort: Optional[List[Tuple[str, int]]] = None) -> Tuple[List[dict], Dict[str, int]]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 200))
    cursor = collection.find(query)
    if sort:
        cursor = cursor.sort(sort)
    items = list(cursor.skip((page - 1) * limit).limit(limit))
    total = collection.count_documents(query)
    return items, {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


def next_sequence(database, name: str) -> int:
    """Atomically increment and return a named counter"""
    counter = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["value"]


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True)
    database["product"].create_index("sku", unique=True)
    database["product"].create_index("seo.slug")
    database["product"].create_index([("status", ASCENDING), ("featured", ASCENDING)])
    database["product"].create_index([("created_at", DESCENDING)])
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("customer", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("payment_intent_id", sparse=True)
    database["category"].create_index("slug", unique=True)
    database["support"].create_index("ticket_number", unique=True)
    database["support"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["content"].create_index("slug")
    database["auditlog"].create_index([("timestamp", DESCENDING)])
    database["settings"].create_index([("category", ASCENDING), ("is_active", ASCENDING)])
    logger.info("Database indexes ensured")
