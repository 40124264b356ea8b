"""
Database helpers

MongoDB access for the storefront. The connection comes from the
DATABASE_URL and DATABASE_NAME environment variables (a .env file is
honoured); when either is missing ``db`` stays None and callers must
report the store as unavailable.

Money is written as decimal strings so prices and totals survive the
round trip without float drift.
"""

import os
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

from schemas import Coupon, Product

load_dotenv()

logger = structlog.get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


class DatabaseUnavailable(Exception):
    pass


def _require_db():
    if db is None:
        raise DatabaseUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db


def ensure_indexes() -> None:
    database = _require_db()
    database["coupon"].create_index("code", unique=True)
    database["orderitem"].create_index([("order_id", 1), ("position", 1)])
    database["delivery"].create_index("order_id", unique=True)
    database["order"].create_index([("user_id", 1), ("ordered_at", -1)])
    database["address"].create_index([("user_id", 1), ("is_principal", -1)])


def encode(value: Any) -> Any:
    """Make a value storable: Decimals become strings, enums their values."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]
    return value


def to_object_id(ref: Any) -> Optional[ObjectId]:
    if isinstance(ref, ObjectId):
        return ref
    try:
        return ObjectId(str(ref))
    except (InvalidId, TypeError):
        return None


def serialize(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Swap Mongo's ``_id`` for a string ``id``."""
    if document is None:
        return None
    document = dict(document)
    document["id"] = str(document.pop("_id"))
    return document


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document into a collection with created/updated timestamps."""
    database = _require_db()

    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude={"id"})
    else:
        data_dict = dict(data)

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(encode(data_dict))
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List[tuple]] = None,
) -> List[Dict[str, Any]]:
    database = _require_db()

    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(document) for document in cursor]


def get_document(collection_name: str, ref: Any, **filters) -> Optional[Dict[str, Any]]:
    oid = to_object_id(ref)
    if oid is None:
        return None
    return serialize(_require_db()[collection_name].find_one({"_id": oid, **filters}))


def update_document(
    collection_name: str, ref: Any, changes: Dict[str, Any], **filters
) -> Optional[Dict[str, Any]]:
    """Apply ``changes`` and return the updated document.

    Extra ``filters`` must also match, so callers can make the write
    conditional on the state they read. Returns None when nothing matched.
    """
    oid = to_object_id(ref)
    if oid is None:
        return None
    changes = dict(changes, updated_at=datetime.now(timezone.utc))
    document = _require_db()[collection_name].find_one_and_update(
        {"_id": oid, **encode(filters)},
        {"$set": encode(changes)},
        return_document=ReturnDocument.AFTER,
    )
    return serialize(document)


def update_documents(collection_name: str, filter_dict: Dict[str, Any], changes: Dict[str, Any]) -> int:
    changes = dict(changes, updated_at=datetime.now(timezone.utc))
    result = _require_db()[collection_name].update_many(filter_dict, {"$set": encode(changes)})
    return result.modified_count


def count_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
    return _require_db()[collection_name].count_documents(filter_dict or {})


def delete_documents(collection_name: str, filter_dict: Dict[str, Any]) -> int:
    return _require_db()[collection_name].delete_many(filter_dict).deleted_count


def delete_document(collection_name: str, ref: Any, **filters) -> bool:
    oid = to_object_id(ref)
    if oid is None:
        return False
    return _require_db()[collection_name].delete_one({"_id": oid, **filters}).deleted_count == 1


def product_lookup(ref: str) -> Optional[Product]:
    document = get_document("product", ref)
    return Product.model_validate(document) if document else None


def coupon_lookup(code: str) -> Optional[Coupon]:
    document = _require_db()["coupon"].find_one({"code": code.strip().upper()})
    return Coupon.model_validate(serialize(document)) if document else None


def record_coupon_use(coupon_id: str) -> bool:
    """Count one redemption of a coupon, respecting ``max_uses``.

    A single conditional increment: the filter only matches while the
    counter is below the cap, so concurrent checkouts can never push it
    past ``max_uses``. A missing ``current_uses`` counts as zero.
    Returns False when the coupon is gone or already used up.
    """
    oid = to_object_id(coupon_id)
    if oid is None:
        return False

    updated = _require_db()["coupon"].find_one_and_update(
        {
            "_id": oid,
            "$or": [
                {"max_uses": None},
                {"$expr": {"$lt": [{"$ifNull": ["$current_uses", 0]}, "$max_uses"]}},
            ],
        },
        {"$inc": {"current_uses": 1}},
    )
    if updated is None:
        logger.info("coupon_use_refused", coupon_id=coupon_id)
    return updated is not None
