"""
MongoDB access for the RaddiWala marketplace.

The connection is configured from DATABASE_URL / DATABASE_NAME. When either is
missing `db` stays None and the API answers "Database not configured".
References between documents are stored as id strings; only `_id` is an
ObjectId.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import NotFoundError, ValidationError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    """Naive UTC timestamp, the shape pymongo hands back on reads."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(str(id_str))
    except Exception:
        raise ValidationError("Invalid id format", {"id": id_str})


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _resolve(database: Optional[Database]) -> Database:
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return target


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    target = _resolve(database)
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
    sort: Optional[List[Any]] = None,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    target = _resolve(database)
    cursor = target[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_by_id(collection_name: str, id_str: str, database: Optional[Database] = None, label: Optional[str] = None) -> Dict[str, Any]:
    target = _resolve(database)
    doc = target[collection_name].find_one({"_id": oid(id_str)})
    if not doc:
        raise NotFoundError(f"{label or collection_name.capitalize()} not found", {"id": id_str})
    return doc


def ensure_indexes(database: Optional[Database] = None) -> None:
    """Create the indexes the business rules depend on (idempotent)."""
    target = _resolve(database)
    target["customer"].create_index([("email", ASCENDING)], unique=True)
    target["raddiwala"].create_index([("email", ASCENDING)], unique=True)
    target["raddiwala"].create_index([("shop_address_id", ASCENDING)])
    target["address"].create_index([("city", ASCENDING), ("pincode", ASCENDING)])
    target["pickuprequest"].create_index([("customer_id", ASCENDING), ("status", ASCENDING)])
    target["pickuprequest"].create_index([("address_id", ASCENDING), ("status", ASCENDING)])
    target["pickuprequest"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    # one bid per (request, collector)
    target["bid"].create_index([("pickup_request_id", ASCENDING), ("raddiwala_id", ASCENDING)], unique=True)
    target["bid"].create_index([("raddiwala_id", ASCENDING), ("is_accepted", ASCENDING)])
    # one settlement per request
    target["completedtransaction"].create_index([("pickup_request_id", ASCENDING)], unique=True)
    target["completedtransaction"].create_index([("customer_id", ASCENDING), ("completed_at", DESCENDING)])
    target["completedtransaction"].create_index([("raddiwala_id", ASCENDING), ("completed_at", DESCENDING)])
    target["subscription"].create_index([("raddiwala_id", ASCENDING), ("is_active", ASCENDING)])
    target["onetimecode"].create_index([("email", ASCENDING), ("purpose", ASCENDING), ("role", ASCENDING)])
    target["onetimecode"].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
    target["notification"].create_index([("email", ASCENDING), ("created_at", DESCENDING)])
