"""
MongoDB access for the storefront.

The client is created from DATABASE_URL / DATABASE_NAME at import time.
When no DATABASE_URL is set, `db` stays None and data routes answer with
"Database not configured".
"""
import math
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client: Optional[MongoClient] = MongoClient(DATABASE_URL) if DATABASE_URL else None
db: Optional[Database] = client[DATABASE_NAME] if client is not None else None


def get_db() -> Database:
    """FastAPI dependency returning the configured database handle."""
    if db is None:
        raise HTTPException(500, "Database not configured")
    return db


def _resolve(database: Optional[Database]) -> Database:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")
    return target


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def days_ago(days: int) -> datetime:
    """Naive UTC cutoff, the form stored datetimes come back in."""
    return (utcnow() - timedelta(days=days)).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    target = _resolve(database)
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Optional[Database] = None) -> None:
    """Unique and lookup indexes the storefront relies on."""
    target = _resolve(database)
    target["category"].create_index([("slug", ASCENDING)], unique=True)
    target["category"].create_index([("name", ASCENDING)], unique=True)
    target["product"].create_index([("slug", ASCENDING)], unique=True)
    target["product"].create_index([("sku", ASCENDING)], unique=True)
    target["product"].create_index([("category", ASCENDING), ("is_active", ASCENDING), ("price", ASCENDING)])
    target["order"].create_index([("order_number", ASCENDING)], unique=True)
    target["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    target["order"].create_index([("status", ASCENDING)])
    target["user"].create_index([("email", ASCENDING)], unique=True)


# ---------- Helpers ----------

def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a Mongo document with `_id` exposed as a string `id`."""
    if doc is None:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def paginate(collection: Collection, filter_q: Dict[str, Any], sort_spec: Sequence[Tuple[str, int]], page: int, limit: int, projection: Optional[Dict[str, Any]] = None) -> Tuple[List[Dict[str, Any]], int]:
    """One page of documents (1-indexed pages) plus the total match count."""
    page = max(page, 1)
    cursor = collection.find(filter_q, projection).sort(list(sort_spec)).skip((page - 1) * limit).limit(limit)
    return list(cursor), collection.count_documents(filter_q)


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }
