"""
MongoDB access for the Tantika API.

Collection names are the lowercase model names from ``schemas`` (User -> "user",
Order -> "order", ...). Documents are stored with the same camelCase keys the
API speaks, so a stored document only needs ``serialize`` before it is returned.
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import settings
from errors import NotFoundError

logger = logging.getLogger(__name__)

client = MongoClient(settings.DATABASE_URL)
db = client[settings.DATABASE_NAME]


def utcnow() -> datetime:
    """Naive UTC, the form MongoDB hands datetimes back in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def create_document(collection_name: str, data, session=None) -> ObjectId:
    """Insert a model or dict, stamping createdAt/updatedAt, and return the new _id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    result = db[collection_name].insert_one(doc, session=session)
    return result.inserted_id


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List[tuple]] = None,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: Any, label: str = "Resource") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly: _id -> id, ObjectId -> str, datetimes -> ISO."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize(v)
            else:
                out[k] = serialize(v)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def paginate(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if limit else 0,
    }


@contextmanager
def transaction():
    """Run the block inside a multi-document transaction.

    The session is yielded so every write in the block can pass ``session=``.
    Leaving the block normally commits; any exception aborts the transaction
    and propagates.
    """
    with client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes():
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["user"].create_index([("username", ASCENDING)], unique=True)
    db["user"].create_index([("role", ASCENDING)])
    db["artisan"].create_index([("userId", ASCENDING)], unique=True)
    db["artisan"].create_index([("status", ASCENDING)])
    db["product"].create_index([("artisan", ASCENDING)])
    db["product"].create_index([("approvalStatus", ASCENDING), ("status", ASCENDING)])
    db["order"].create_index([("orderNumber", ASCENDING)], unique=True)
    db["order"].create_index([("items.artisan", ASCENDING)])
    db["order"].create_index([("customer.userId", ASCENDING)])
    db["order"].create_index([("status", ASCENDING), ("createdAt", DESCENDING)])
    db["payout"].create_index([("artisan", ASCENDING), ("status", ASCENDING)])
    db["notification"].create_index(
        [("recipientId", ASCENDING), ("recipientType", ASCENDING), ("createdAt", DESCENDING)]
    )
    db["notification"].create_index([("expiresAt", ASCENDING)], expireAfterSeconds=0)
    db["wishlist"].create_index([("userId", ASCENDING)], unique=True)
    logger.info("Database indexes ensured on %s", settings.DATABASE_NAME)
