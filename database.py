"""
Database helpers

Connects to MongoDB using DATABASE_URL / DATABASE_NAME and exposes a few
helpers shared by the route handlers. Every collection is addressed by the
lowercase name of its schema class (see schemas.py).
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    # Stored naive, matching what pymongo hands back without tz_aware.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def oid(value: Any) -> Optional[ObjectId]:
    """Coerce a path/body id to ObjectId; None when it cannot be one."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def serialize_many(docs) -> List[dict]:
    return [serialize(d) for d in docs]


def _require_db():
    if db is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL and DATABASE_NAME.")
    return db


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at / updated_at. Returns the new id."""
    database = _require_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[dict]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, filter_dict: Dict[str, Any]) -> Optional[dict]:
    return _require_db()[collection_name].find_one(filter_dict)


def update_document(collection_name: str, filter_dict: Dict[str, Any], changes: Dict[str, Any]) -> int:
    """$set changes (plus updated_at) on the first match. Returns matched count."""
    changes = dict(changes)
    changes["updated_at"] = utcnow()
    result = _require_db()[collection_name].update_one(filter_dict, {"$set": changes})
    return result.matched_count
