"""
Database helpers

MongoDB access shared by the routes and the order workflow. `db` is None when
DATABASE_URL / DATABASE_NAME are not configured; routes resolve the database
through main.get_db so tests can substitute their own.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from settings import DATABASE_NAME, DATABASE_URL

log = structlog.get_logger().bind(component="database")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=False)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes, so everything we compare against is naive UTC too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string."""
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not configured")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database=None) -> List[Dict[str, Any]]:
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not configured")
    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True)
    database["offercode"].create_index("code", unique=True)
    database["user_offer_code"].create_index(
        [("user_id", ASCENDING), ("offer_code_id", ASCENDING)], unique=True
    )
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["order"].create_index([("status", ASCENDING), ("reserved_until", ASCENDING)])
    database["login_attempt"].create_index("expires_at", expireAfterSeconds=0)


class Compensation:
    """
    Unit of work built from compensating actions.

    Each successful step registers how to undo itself. If the block raises,
    the registered undos run newest-first and the original exception
    propagates. Mongo writes are single-document atomic, so this is what makes
    a multi-document write all-or-nothing without a replica-set transaction.
    """

    def __init__(self, name: str):
        self.name = name
        self._undo: List[Callable[[], Any]] = []

    def on_rollback(self, action: Callable[[], Any]) -> None:
        self._undo.append(action)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            return False
        log.warning("rolling_back", unit=self.name, steps=len(self._undo), error=str(exc))
        for action in reversed(self._undo):
            try:
                action()
            except Exception:
                log.exception("rollback_step_failed", unit=self.name)
        return False
