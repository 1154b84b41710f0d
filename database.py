"""
MongoDB access for the SmartBite API.

`db` is None when DATABASE_URL is not configured; routes check for that
through the `get_db` dependency in main.py.
"""
import os
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING, DESCENDING

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "smartbite")
DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "10"))
# Multi-document transactions need a replica set; standalone servers must turn this off.
DATABASE_TRANSACTIONS = os.getenv("DATABASE_TRANSACTIONS", "true").lower() in ("1", "true", "yes")

client = None
db = None
if DATABASE_URL:
    client = MongoClient(DATABASE_URL, maxPoolSize=DATABASE_POOL_SIZE, tz_aware=True)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None, session=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    database = db if database is None else database
    if database is None:
        raise RuntimeError("Database not configured")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
                  database=None, sort=None) -> List[Dict[str, Any]]:
    database = db if database is None else database
    if database is None:
        raise RuntimeError("Database not configured")
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a stored document JSON friendly: `_id` becomes `id`, ObjectIds and datetimes become strings."""
    if not doc:
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            k = "id"
        if isinstance(v, ObjectId):
            v = str(v)
        elif isinstance(v, datetime):
            v = v.isoformat()
        elif isinstance(v, list):
            v = [serialize(i) if isinstance(i, dict) else i for i in v]
        out[k] = v
    return out


@contextmanager
def transaction(database, enabled: Optional[bool] = None):
    """Yield a session bound to a started transaction, or None when transactions are disabled.

    The transaction commits when the block exits normally and aborts when it raises.
    """
    enabled = DATABASE_TRANSACTIONS if enabled is None else enabled
    if not enabled:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index(
        [("role", ASCENDING)], unique=True, name="single_admin",
        partialFilterExpression={"role": "admin"},
    )
    database["restaurant"].create_index([("owner_user_id", ASCENDING)], unique=True)
    database["menuitem"].create_index([("restaurant_id", ASCENDING)])
    database["order"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("restaurant_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING), ("agent_id", ASCENDING)])
    database["payment"].create_index([("gateway_reference", ASCENDING)])
    database["payment"].create_index([("order_id", ASCENDING), ("created_at", DESCENDING)])
    database["deliverylocation"].create_index([("order_id", ASCENDING), ("timestamp", ASCENDING)])
    logger.info("Database indexes ensured on %s", database.name)
