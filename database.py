"""MongoDB access.

Each Pydantic model in ``schemas`` maps to a collection named after the
lowercase class name (``User`` -> ``user``). References between documents are
stored as id strings; only ``_id`` is an ``ObjectId``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import NotFound, ServiceUnavailable

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect(settings) -> Database:
    global client, db
    client = MongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=10_000, tz_aware=True)
    if settings.database_name:
        db = client[settings.database_name]
    else:
        db = client.get_default_database(default="devlink")
    logger.info("MongoDB connected (database=%s)", db.name)
    return db


def close() -> None:
    global client, db
    if client is not None:
        client.close()
    client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise ServiceUnavailable("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["developer"].create_index("user_id", unique=True)
    database["employer"].create_index("user_id", unique=True)
    database["job"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["job"].create_index("employer_id")
    database["application"].create_index([("job_id", ASCENDING), ("developer_id", ASCENDING)], unique=True)
    database["conversation"].create_index("pair_key", unique=True)
    database["conversation"].create_index([("participant_a", ASCENDING), ("participant_b", ASCENDING)], unique=True)
    database["message"].create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])
    database["contract"].create_index("employer_id")
    database["contract"].create_index("developer_id")
    database["escrowtransaction"].create_index("contract_id")
    database["review"].create_index([("contract_id", ASCENDING), ("reviewer_id", ASCENDING)], unique=True)
    database["review"].create_index("reviewee_id")
    database["auditlog"].create_index([("created_at", DESCENDING)])
    database["emailverification"].create_index("expires_at", expireAfterSeconds=0)
    database["emailverification"].create_index("email")
    database["refreshtoken"].create_index("expires_at", expireAfterSeconds=0)
    database["refreshtoken"].create_index("token", unique=True)
    database["showcase"].create_index("developer_id")
    database["showcase"].create_index([("category", ASCENDING), ("status", ASCENDING)])
    database["showcase"].create_index([("looking_for", ASCENDING), ("status", ASCENDING)])
    database["adminconfig"].create_index("key", unique=True)


# ----------------------- Helpers -----------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Stored datetimes may come back naive (UTC); make them comparable."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: Union[str, ObjectId], label: str = "Record") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump(mode="python")
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(database: Database, collection_name: str, doc_id: str, label: str = "Record") -> Dict[str, Any]:
    doc = database[collection_name].find_one({"_id": to_object_id(doc_id, label)})
    if not doc:
        raise NotFound(f"{label} not found")
    return doc


def update_document(
    database: Database,
    collection_name: str,
    doc_id: Union[str, ObjectId],
    changes: Dict[str, Any],
    expected: Optional[Dict[str, Any]] = None,
) -> bool:
    """Set ``changes`` on one document; ``expected`` fields must still match."""
    query: Dict[str, Any] = {"_id": to_object_id(doc_id)}
    if expected:
        query.update(expected)
    result = database[collection_name].update_one(query, {"$set": {**changes, "updated_at": utcnow()}})
    return result.matched_count == 1


def serialize(doc: Optional[Dict[str, Any]], drop: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    hidden = set(drop)
    out = {k: v for k, v in doc.items() if k != "_id" and k not in hidden}
    out["id"] = str(doc["_id"])
    return out


def user_names(database: Database, user_ids: Iterable[str]) -> Dict[str, Optional[str]]:
    ids = [to_object_id(u) for u in set(user_ids) if ObjectId.is_valid(u)]
    users = database["user"].find({"_id": {"$in": ids}}, {"full_name": 1})
    return {str(u["_id"]): u.get("full_name") for u in users}
