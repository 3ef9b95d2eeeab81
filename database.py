"""
MongoDB access for the storefront.

Connection settings come from the environment (DATABASE_URL, DATABASE_NAME).
When they are missing `db` stays None and every route that needs storage
answers 500 "Database not configured".
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(
        DATABASE_URL,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
        connectTimeoutMS=MONGO_TIMEOUT_MS,
    )
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes; keep ours comparable with them.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def ensure_indexes(database) -> None:
    database["size_stock"].create_index(
        [("product_id", ASCENDING), ("size", ASCENDING)], unique=True
    )
    database["campaign"].create_index(
        [("product_id", ASCENDING), ("is_active", ASCENDING)]
    )
    database["order"].create_index([("batch_id", ASCENDING)])
    database["order"].create_index([("created_at", DESCENDING)])
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("api_token", ASCENDING)])


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def find_by_id(database, collection_name: str, doc_id: str) -> Optional[dict]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return database[collection_name].find_one({"_id": oid})


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return doc_to_dict(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def doc_to_dict(doc: dict) -> Dict[str, Any]:
    out = {k: _plain(v) for k, v in doc.items()}
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out
