"""
MongoDB access for AgriLink.

A single pymongo client is created from settings at import time (pymongo connects
lazily). Route handlers receive the database through the `get_db` dependency so
tests can swap in an in-memory database.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import NotFound
from settings import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

client: Optional[MongoClient] = MongoClient(settings.DATABASE_URL) if settings.DATABASE_URL else None
db: Optional[Database] = client[settings.DATABASE_NAME] if client is not None else None


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not configured: set DATABASE_URL")
    return db


# ------------------------- Id helpers -------------------------

def to_oid(val) -> Optional[ObjectId]:
    if isinstance(val, ObjectId):
        return val
    try:
        return ObjectId(str(val))
    except (InvalidId, TypeError):
        return None


def require_oid(val, what: str = "Resource") -> ObjectId:
    oid = to_oid(val)
    if oid is None:
        raise NotFound(f"{what} not found")
    return oid


def insert_with_id(database: Database, collection: str, doc) -> str:
    if isinstance(doc, BaseModel):
        doc = doc.model_dump()
    now = datetime.now(timezone.utc)
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    res = database[collection].insert_one(doc)
    return str(res.inserted_id)


def get_by_id(database: Database, collection: str, id_str) -> Optional[dict]:
    oid = to_oid(id_str)
    if oid is None:
        return None
    return database[collection].find_one({"_id": oid})


def list_many(database: Database, collection: str, query: dict = None, sort: Optional[list] = None,
              skip: int = 0, limit: Optional[int] = None):
    cursor = database[collection].find(query or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value):
    """Make a document JSON friendly: ObjectIds become strings, `_id` becomes `id`."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            out["id" if k == "_id" else k] = serialize(v)
        return out
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    return value


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("role")
    database["product"].create_index("farmer")
    database["product"].create_index("category")
    database["product"].create_index("status")
    database["product"].create_index([("createdAt", DESCENDING)])
    database["order"].create_index("orderNumber", unique=True)
    for field in ("buyer", "farmer", "exporter", "status"):
        database["order"].create_index(field)
    database["order"].create_index([("createdAt", DESCENDING), ("status", ASCENDING)])
    logger.info("MongoDB indexes ensured")
