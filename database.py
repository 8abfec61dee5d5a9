"""
MongoDB helpers.

The database handle is created once per application (see main.lifespan) and
passed to whoever needs it; nothing here keeps a module-level connection.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import settings

logger = logging.getLogger(__name__)

COLLECTIONS = ["user", "conversation", "message"]


def now_utc():
    return datetime.now(timezone.utc)


def get_database(url: Optional[str] = None, name: Optional[str] = None) -> Database:
    client = MongoClient(url or settings.DATABASE_URL, tz_aware=True)
    return client[name or settings.DATABASE_NAME]


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    stamp = now_utc()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> list[dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(db: Database):
    # One conversation per unordered pair: pair_key is "<low>:<high>"
    db["conversation"].create_index([("pair_key", ASCENDING)], unique=True)
    db["conversation"].create_index([("participant_ids", ASCENDING), ("updated_at", DESCENDING)])
    db["message"].create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])
    db["message"].create_index([("receiver_id", ASCENDING), ("message_status", ASCENDING)])
    logger.info("Indexes ensured on %s", ", ".join(COLLECTIONS))
