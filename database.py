"""
MongoDB access

One client per process. `init_db` installs the database handle used by every
request (tests install an in-memory one) and makes sure the indexes the
checkout flow depends on exist.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import AppConfig

logger = logging.getLogger(__name__)

_db: Optional[Database] = None

# A claim older than this is assumed to belong to a run that died
EFFECT_LEASE = timedelta(minutes=5)


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so everything we store is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def connect(config: AppConfig) -> Database:
    if not config.database_url:
        raise RuntimeError("DATABASE_URL is not set")
    client = MongoClient(config.database_url)
    return client[config.database_name]


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["cart"].create_index("user_id", unique=True)
    db["coupon"].create_index("code", unique=True)
    db["order"].create_index("stripe_session_id", unique=True, sparse=True)
    db["order"].create_index("order_number", unique=True, sparse=True)
    db["order"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index("user_id")
    db["order"].create_index("tracking.tracking_number")
    db["product"].create_index([("category", ASCENDING), ("price", ASCENDING), ("is_active", ASCENDING)])


def init_db(db: Database) -> Database:
    global _db
    _db = db
    ensure_indexes(db)
    logger.info("Database ready: %s", db.name)
    return db


def reset_db() -> None:
    global _db
    _db = None


def is_initialized() -> bool:
    return _db is not None


def get_db() -> Database:
    if _db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return _db


def to_object_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return ObjectId(id_str)


def serialize_doc(doc: Optional[Dict[str, Any]], hidden: tuple = ()) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = {k: v for k, v in doc.items() if k not in hidden}
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return doc


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    doc["_id"] = db[collection_name].insert_one(doc).inserted_id
    return doc


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List] = None, skip: int = 0, limit: int = 0,
                  projection: Optional[Dict[str, int]] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(db: Database, collection_name: str, filter_dict: Dict[str, Any], page: int, limit: int,
             sort: Optional[List] = None, projection: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, limit)
    total = db[collection_name].count_documents(filter_dict)
    docs = get_documents(db, collection_name, filter_dict, sort=sort or [("created_at", DESCENDING)],
                         skip=(page - 1) * limit, limit=limit, projection=projection)
    return {
        "items": docs,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


class EffectInProgress(Exception):
    """Another run holds the claim on an effect; try again later."""


def apply_once(db: Database, collection_name: str, query: Dict[str, Any], update: Dict[str, Any],
               effect_id: str) -> bool:
    """Apply ``update`` to the document matching ``query`` at most once per ``effect_id``.

    The effect is claimed in ``applied_effect``; the target gets ``effect_id`` in
    ``pending_effects`` in the same write as the update and loses it once the
    effect is marked applied, so target documents only carry in-flight ids. A
    run that died after the update is detected by that tag on replay. Returns
    True when this call changed the target.
    """
    effects = db["applied_effect"]
    now = utcnow()
    effects.update_one(
        {"_id": effect_id},
        {"$setOnInsert": {"collection": collection_name, "state": "pending", "claimed_at": None, "created_at": now}},
        upsert=True,
    )
    claimed = effects.find_one_and_update(
        {"_id": effect_id, "$or": [
            {"state": "pending"},
            {"state": "applying", "claimed_at": {"$lt": now - EFFECT_LEASE}},
        ]},
        {"$set": {"state": "applying", "claimed_at": now}},
    )
    if claimed is None:
        if effects.find_one({"_id": effect_id}, {"state": 1})["state"] == "applied":
            return False
        raise EffectInProgress(f"Effect {effect_id} is being applied by another run")

    tagged = dict(update)
    tagged["$addToSet"] = {**update.get("$addToSet", {}), "pending_effects": effect_id}
    result = db[collection_name].update_one({**query, "pending_effects": {"$ne": effect_id}}, tagged)
    effects.update_one({"_id": effect_id}, {"$set": {"state": "applied", "applied_at": utcnow()}})
    db[collection_name].update_one(query, {"$pull": {"pending_effects": effect_id}})
    return result.modified_count == 1
