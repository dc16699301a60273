"""
MongoDB access for the e-pharmacy backend.

The collection for a schema is the lowercase of its class name. Documents
reference each other through string ids.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

from config import settings

logger = logging.getLogger(__name__)

_client = None
db = None

if settings.DATABASE_URL and settings.DATABASE_NAME:
    if settings.DATABASE_URL.startswith("mongomock://"):
        import mongomock
        _client = mongomock.MongoClient()
    else:
        _client = MongoClient(settings.DATABASE_URL)
    db = _client[settings.DATABASE_NAME]
else:
    logger.warning("[DB] DATABASE_URL / DATABASE_NAME not set, running without a database")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for value, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at, return its id."""
    if db is None:
        raise RuntimeError("Database not configured")
    if isinstance(data, BaseModel):
        payload = data.model_dump()
    else:
        payload = dict(data)
    now = utcnow()
    payload.setdefault("created_at", now)
    payload["updated_at"] = now
    result = db[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not configured")
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def get_document(collection_name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
    oid = parse_id(doc_id)
    if oid is None:
        return None
    return db[collection_name].find_one({"_id": oid})


def update_document(collection_name: str, doc_id: Any, changes: Dict[str, Any],
                    extra: Optional[Dict[str, Any]] = None) -> bool:
    """Apply a $set (plus optional other operators). Returns True when matched."""
    oid = parse_id(doc_id)
    if oid is None:
        return False
    update: Dict[str, Any] = {"$set": {**changes, "updated_at": utcnow()}}
    if extra:
        update.update(extra)
    res = db[collection_name].update_one({"_id": oid}, update)
    return res.matched_count > 0
