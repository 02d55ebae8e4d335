# /chatflow/services/activity_service.py

from typing import List, Optional

import structlog
from pymongo import DESCENDING

from chatflow.models.events import ActivityEvent, ActivityLevel
from chatflow.services.db_service import to_document

# Activity events are the audit trail flow owners see: errors and notable
# session transitions. Each one is persisted, logged and published on the
# owner's live-update channel.

log = structlog.get_logger(__name__)


def live_channel(owner_id: Optional[str]) -> str:
    return f"chatflow:activity:{owner_id or 'system'}"


class MongoActivityLog:
    def __init__(self, db):
        self.collection = db.activity_logs

    async def insert(self, event: ActivityEvent):
        document = to_document(event)
        document.pop("_id", None)
        await self.collection.insert_one(document)

    async def list(self, owner_id: str, limit: int = 50, level: Optional[str] = None) -> List[ActivityEvent]:
        query = {"owner_id": owner_id}
        if level:
            query["level"] = level
        cursor = self.collection.find(query, {"_id": 0}).sort("created_at", DESCENDING).limit(limit)
        return [ActivityEvent.model_validate(document) async for document in cursor]


class MemoryActivityLog:
    def __init__(self):
        self.events: List[ActivityEvent] = []

    async def insert(self, event: ActivityEvent):
        self.events.append(event)

    async def list(self, owner_id: str, limit: int = 50, level: Optional[str] = None) -> List[ActivityEvent]:
        matching = [
            e for e in reversed(self.events)
            if e.owner_id == owner_id and (level is None or e.level.value == level)
        ]
        return matching[:limit]


class ActivityService:
    def __init__(self, log_store, cache):
        self.log_store = log_store
        self.cache = cache

    async def record(self, event: ActivityEvent):
        """Never raises: a failing audit sink must not fail the conversation."""
        fields = {
            "kind": event.kind,
            "owner_id": event.owner_id,
            "flow_id": event.flow_id,
            "session_key": event.session_key,
            "group_session_id": event.group_session_id,
            **event.metadata,
        }
        if event.level == ActivityLevel.ERROR:
            log.error(event.message, **fields)
        elif event.level == ActivityLevel.WARNING:
            log.warning(event.message, **fields)
        else:
            log.info(event.message, **fields)

        try:
            await self.log_store.insert(event)
        except Exception as e:
            log.error("Failed to persist activity event", kind=event.kind, error=str(e), exc_info=True)

        await self.cache.publish(live_channel(event.owner_id), event.model_dump(mode="json"))

    async def list(self, owner_id: str, limit: int = 50, level: Optional[str] = None) -> List[ActivityEvent]:
        return await self.log_store.list(owner_id, limit=limit, level=level)
