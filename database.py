"""
MongoDB access for the shop backend.

`db` is the configured database handle, or None when DATABASE_URL is not set.
The helpers below take the handle explicitly so the API can inject it per
request (tests hand in an in-memory database).
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

from errors import ServerError, ValidationError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "shop")

db = None
if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
    logger.info("Using MongoDB database %s", DATABASE_NAME)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: Union[str, ObjectId]) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid ID: {id_str}")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Replace Mongo's `_id` with a string `id` so the document is JSON friendly."""
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def ensure_indexes(database) -> None:
    database["user"].create_index("username", unique=True)
    database["user"].create_index("email", unique=True)
    database["role"].create_index("name", unique=True)
    database["inventory"].create_index("product_id", unique=True)


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict["created_at"] = now_utc()
    data_dict["updated_at"] = now_utc()
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(database, collection_name: str, doc_id: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
    return database[collection_name].find_one({"_id": oid(doc_id)})


def update_by_id(database, collection_name: str, doc_id: Union[str, ObjectId],
                 update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Apply a Mongo update document atomically and return the updated document."""
    update = dict(update)
    update.setdefault("$set", {})
    update["$set"] = {**update["$set"], "updated_at": now_utc()}
    return database[collection_name].find_one_and_update(
        {"_id": oid(doc_id)},
        update,
        return_document=ReturnDocument.AFTER,
    )


def delete_by_id(database, collection_name: str, doc_id: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
    return database[collection_name].find_one_and_delete({"_id": oid(doc_id)})


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise ServerError("Database not configured")
    return db
