"""
MongoDB access for the marketplace.

The module-level client is built lazily from DATABASE_URL; request handlers
receive the database through the `get_db` dependency so tests can substitute
an in-memory one. Every collection is the lowercase name of its model.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union
from uuid import uuid4

import structlog
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from errors import StorageError

logger = structlog.get_logger(__name__)

client: Optional[MongoClient] = MongoClient(config.DATABASE_URL) if config.DATABASE_URL else None
db: Optional[Database] = client[config.DATABASE_NAME] if client is not None else None

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def get_db() -> Database:
    if db is None:
        raise StorageError("Database is not configured (DATABASE_URL is not set)")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into StorageError.

    DuplicateKeyError passes through untouched, callers decide what a
    duplicate means for them.
    """
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as e:
        logger.error("storage_failure", operation=operation, error=str(e))
        raise StorageError(f"Storage failure during {operation}") from e


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def to_document(data: Union[BaseModel, Dict[str, Any]], exclude=None) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude=exclude)
    elif exclude:
        data = {k: v for k, v in data.items() if k not in exclude}
    return _plain(dict(data))


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(
    database: Database,
    collection_name: str,
    data: Union[BaseModel, Dict[str, Any]],
    doc_id: Optional[str] = None,
) -> str:
    """Insert a document and return its id.

    A fresh id is generated unless one is given; `created_at` is stamped
    when the data does not carry it already.
    """
    doc = to_document(data, exclude={"id"})
    doc["_id"] = doc_id or new_id()
    if doc.get("created_at") is None:
        doc["created_at"] = utcnow()
    with storage_errors(f"insert into {collection_name}"):
        database[collection_name].insert_one(doc)
    return doc["_id"]


def get_document(database: Database, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
    with storage_errors(f"read from {collection_name}"):
        doc = database[collection_name].find_one({"_id": doc_id})
    return serialize(doc)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort=None,
) -> List[Dict[str, Any]]:
    with storage_errors(f"query {collection_name}"):
        cursor = database[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [serialize(d) for d in cursor]


def ensure_indexes(database: Database) -> None:
    with storage_errors("index creation"):
        database["user"].create_index([("email", ASCENDING)], unique=True)
        database["product"].create_index([("vendor_id", ASCENDING)])
        database["order"].create_index([("customer_id", ASCENDING)])
        database["order"].create_index([("vendor_id", ASCENDING)])
        database["review"].create_index(
            [("product_id", ASCENDING), ("customer_id", ASCENDING)], unique=True
        )
        database["cart"].create_index([("user_id", ASCENDING)], unique=True)
        database["notification"].create_index([("target_role", ASCENDING)])
    logger.info("indexes_ensured", database=database.name)
