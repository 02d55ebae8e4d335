# /chatflow/services/deferred_store.py

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from chatflow.models.events import DeferredStatus, DeferredWorkItem
from chatflow.models.flow import utcnow
from chatflow.services.db_service import from_document, to_document
from chatflow.utils.metrics import database_operations_counter

# Deferred work items. Consumers claim one due item at a time with an atomic
# status flip plus a lease; an item whose lease expires (its worker died) is
# claimable again, which gives at-least-once delivery to the resume path.

logger = logging.getLogger(__name__)

PENDING = DeferredStatus.PENDING.value
PROCESSING = DeferredStatus.PROCESSING.value


class MongoDeferredStore:
    def __init__(self, db, clock: Callable[[], datetime] = utcnow):
        self.collection = db.deferred_work
        self.clock = clock

    async def enqueue(self, item: DeferredWorkItem) -> bool:
        """Returns False when an item with the same idempotency key already exists."""
        try:
            await self.collection.insert_one(to_document(item))
        except DuplicateKeyError:
            logger.info(f"Deferred work {item.idempotency_key} already enqueued")
            return False
        database_operations_counter.labels(operation="deferred_enqueue", status="success").inc()
        return True

    async def claim_due(self, lease_seconds: int, max_attempts: int) -> Optional[DeferredWorkItem]:
        now = self.clock()
        document = await self.collection.find_one_and_update(
            {
                "$or": [
                    {"status": PENDING, "due_at": {"$lte": now}},
                    {"status": PROCESSING, "lease_until": {"$lt": now}},
                ],
                "attempts": {"$lt": max_attempts},
            },
            {"$set": {"status": PROCESSING, "lease_until": now + timedelta(seconds=lease_seconds)}, "$inc": {"attempts": 1}},
            sort=[("due_at", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        return from_document(DeferredWorkItem, document)

    async def complete(self, item_id: str):
        await self.collection.update_one(
            {"_id": item_id}, {"$set": {"status": DeferredStatus.DONE.value, "lease_until": None}}
        )

    async def retry(self, item_id: str, error: str, due_at: datetime):
        await self.collection.update_one(
            {"_id": item_id},
            {"$set": {"status": PENDING, "last_error": error, "due_at": due_at, "lease_until": None}},
        )

    async def fail(self, item_id: str, error: str):
        await self.collection.update_one(
            {"_id": item_id},
            {"$set": {"status": DeferredStatus.FAILED.value, "last_error": error, "lease_until": None}},
        )

    async def collect_abandoned(self, max_attempts: int) -> List[DeferredWorkItem]:
        """Marks failed the items whose lease expired on their last allowed attempt."""
        now = self.clock()
        abandoned = []
        while True:
            document = await self.collection.find_one_and_update(
                {"status": PROCESSING, "lease_until": {"$lt": now}, "attempts": {"$gte": max_attempts}},
                {"$set": {"status": DeferredStatus.FAILED.value, "last_error": "lease expired on final attempt"}},
                return_document=ReturnDocument.AFTER,
            )
            if document is None:
                return abandoned
            abandoned.append(from_document(DeferredWorkItem, document))

    async def get_by_key(self, idempotency_key: str) -> Optional[DeferredWorkItem]:
        return from_document(DeferredWorkItem, await self.collection.find_one({"idempotency_key": idempotency_key}))

    async def list(self, status: Optional[str] = None, limit: int = 50) -> List[DeferredWorkItem]:
        query = {"status": status} if status else {}
        cursor = self.collection.find(query).sort("due_at", DESCENDING).limit(limit)
        return [from_document(DeferredWorkItem, document) async for document in cursor]


class MemoryDeferredStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.items: Dict[str, DeferredWorkItem] = {}

    async def enqueue(self, item: DeferredWorkItem) -> bool:
        if any(existing.idempotency_key == item.idempotency_key for existing in self.items.values()):
            logger.info(f"Deferred work {item.idempotency_key} already enqueued")
            return False
        self.items[item.id] = item.model_copy(deep=True)
        return True

    async def claim_due(self, lease_seconds: int, max_attempts: int) -> Optional[DeferredWorkItem]:
        now = self.clock()

        def claimable(item: DeferredWorkItem) -> bool:
            if item.attempts >= max_attempts:
                return False
            if item.status == DeferredStatus.PENDING:
                return item.due_at <= now
            return item.status == DeferredStatus.PROCESSING and item.lease_until is not None and item.lease_until < now

        candidates = sorted((i for i in self.items.values() if claimable(i)), key=lambda i: i.due_at)
        if not candidates:
            return None
        item = candidates[0]
        item.status = DeferredStatus.PROCESSING
        item.lease_until = now + timedelta(seconds=lease_seconds)
        item.attempts += 1
        return item.model_copy(deep=True)

    async def complete(self, item_id: str):
        item = self.items[item_id]
        item.status = DeferredStatus.DONE
        item.lease_until = None

    async def retry(self, item_id: str, error: str, due_at: datetime):
        item = self.items[item_id]
        item.status = DeferredStatus.PENDING
        item.last_error = error
        item.due_at = due_at
        item.lease_until = None

    async def fail(self, item_id: str, error: str):
        item = self.items[item_id]
        item.status = DeferredStatus.FAILED
        item.last_error = error
        item.lease_until = None

    async def collect_abandoned(self, max_attempts: int) -> List[DeferredWorkItem]:
        now = self.clock()
        abandoned = []
        for item in self.items.values():
            if (item.status == DeferredStatus.PROCESSING and item.lease_until and item.lease_until < now
                    and item.attempts >= max_attempts):
                item.status = DeferredStatus.FAILED
                item.last_error = "lease expired on final attempt"
                abandoned.append(item.model_copy(deep=True))
        return abandoned

    async def get_by_key(self, idempotency_key: str) -> Optional[DeferredWorkItem]:
        for item in self.items.values():
            if item.idempotency_key == idempotency_key:
                return item.model_copy(deep=True)
        return None

    async def list(self, status: Optional[str] = None, limit: int = 50) -> List[DeferredWorkItem]:
        matching = [i for i in self.items.values() if status is None or i.status.value == status]
        matching.sort(key=lambda i: i.due_at, reverse=True)
        return [i.model_copy(deep=True) for i in matching[:limit]]
