# /chatflow/services/db_service.py

import logging
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, IndexModel

from chatflow.config.settings import Settings
from chatflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def to_document(model: BaseModel) -> Dict[str, Any]:
    """Dumps a model for MongoDB, using the model's `id` as `_id`."""
    document = _plain(model.model_dump())
    if "id" in document:
        document["_id"] = document.pop("id")
    return document


def from_document(model_cls: Type[ModelT], document: Optional[Dict[str, Any]]) -> Optional[ModelT]:
    if document is None:
        return None
    data = dict(document)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    return model_cls.model_validate(data)


class DatabaseService:
    """
    Owns the MongoDB client and the collection indexes every Mongo-backed
    store relies on.
    """

    def __init__(self, settings: Settings):
        try:
            self.client = AsyncIOMotorClient(
                settings.mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    async def create_indexes(self):
        """Creates all collection indexes. Safe to run on every startup."""
        try:
            await self.db.sessions.create_indexes([
                # At most one active session per session key.
                IndexModel(
                    [("session_key", ASCENDING)], unique=True,
                    partialFilterExpression={"status": "active"}, name="one_active_session_per_key",
                ),
                IndexModel([("session_key", ASCENDING), ("created_at", DESCENDING)]),
                IndexModel([("flow_id", ASCENDING), ("status", ASCENDING)]),
                IndexModel([("group_session_id", ASCENDING)]),
                IndexModel([("status", ASCENDING), ("last_activity_at", ASCENDING)]),
            ])
            await self.db.group_sessions.create_indexes([
                IndexModel([("flow_id", ASCENDING), ("status", ASCENDING), ("started_at", ASCENDING)]),
                IndexModel([("status", ASCENDING), ("updated_at", ASCENDING)]),
            ])
            await self.db.flows.create_index([("owner_id", ASCENDING)])
            await self.db.flow_variables.create_index(
                [("owner_id", ASCENDING), ("scope", ASCENDING), ("subject_id", ASCENDING)], unique=True
            )
            await self.db.flow_records.create_index(
                [("owner_id", ASCENDING), ("collection", ASCENDING), ("created_at", ASCENDING)]
            )
            await self.db.deferred_work.create_indexes([
                IndexModel([("idempotency_key", ASCENDING)], unique=True),
                IndexModel([("status", ASCENDING), ("due_at", ASCENDING)]),
                IndexModel([("target_session_key", ASCENDING)]),
            ])
            await self.db.activity_logs.create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
            database_operations_counter.labels(operation="create_indexes", status="success").inc()
            logger.info("MongoDB indexes ensured.")
        except Exception as e:
            database_operations_counter.labels(operation="create_indexes", status="error").inc()
            logger.error(f"Failed to create MongoDB indexes: {e}", exc_info=True)
            raise

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception:
            return False

    def close(self):
        self.client.close()
