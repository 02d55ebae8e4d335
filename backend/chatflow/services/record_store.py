# /chatflow/services/record_store.py

import uuid
import logging
from typing import Any, Dict, List

from pymongo import ASCENDING

from chatflow.models.flow import utcnow
from chatflow.utils.metrics import database_operations_counter

# Owner-scoped, schema-flexible records used by the `database` node. Every
# query is confined to one owner and one named collection; filters are
# equality matches on record fields (`id` matches the record id).

logger = logging.getLogger(__name__)


def _mongo_filter(owner_id: str, collection: str, filters: Dict[str, Any]) -> Dict[str, Any]:
    query: Dict[str, Any] = {"owner_id": owner_id, "collection": collection}
    for key, value in filters.items():
        query["_id" if key == "id" else f"data.{key}"] = value
    return query


def _to_record(document: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": document["_id"], **document.get("data", {})}


class MongoRecordStore:
    def __init__(self, db):
        self.collection = db.flow_records

    async def select(self, owner_id: str, collection: str, filters: Dict[str, Any], limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.collection.find(_mongo_filter(owner_id, collection, filters)).sort("created_at", ASCENDING).limit(limit)
        records = [_to_record(document) async for document in cursor]
        database_operations_counter.labels(operation="record_select", status="success").inc()
        return records

    async def insert(self, owner_id: str, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        document = {
            "_id": uuid.uuid4().hex, "owner_id": owner_id, "collection": collection,
            "data": data, "created_at": now, "updated_at": now,
        }
        await self.collection.insert_one(document)
        database_operations_counter.labels(operation="record_insert", status="success").inc()
        return _to_record(document)

    async def update(self, owner_id: str, collection: str, filters: Dict[str, Any], data: Dict[str, Any]) -> int:
        update = {f"data.{key}": value for key, value in data.items()}
        update["updated_at"] = utcnow()
        result = await self.collection.update_many(_mongo_filter(owner_id, collection, filters), {"$set": update})
        return result.modified_count

    async def delete(self, owner_id: str, collection: str, filters: Dict[str, Any]) -> int:
        result = await self.collection.delete_many(_mongo_filter(owner_id, collection, filters))
        return result.deleted_count

    async def count(self, owner_id: str, collection: str, filters: Dict[str, Any]) -> int:
        return await self.collection.count_documents(_mongo_filter(owner_id, collection, filters))


class MemoryRecordStore:
    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    def _matching(self, owner_id: str, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        def matches(document):
            if document["owner_id"] != owner_id or document["collection"] != collection:
                return False
            for key, value in filters.items():
                actual = document["_id"] if key == "id" else document["data"].get(key)
                if actual != value:
                    return False
            return True
        return [document for document in self.records if matches(document)]

    async def select(self, owner_id: str, collection: str, filters: Dict[str, Any], limit: int = 100) -> List[Dict[str, Any]]:
        return [_to_record(document) for document in self._matching(owner_id, collection, filters)[:limit]]

    async def insert(self, owner_id: str, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utcnow()
        document = {
            "_id": uuid.uuid4().hex, "owner_id": owner_id, "collection": collection,
            "data": dict(data), "created_at": now, "updated_at": now,
        }
        self.records.append(document)
        return _to_record(document)

    async def update(self, owner_id: str, collection: str, filters: Dict[str, Any], data: Dict[str, Any]) -> int:
        matching = self._matching(owner_id, collection, filters)
        for document in matching:
            document["data"].update(data)
            document["updated_at"] = utcnow()
        return len(matching)

    async def delete(self, owner_id: str, collection: str, filters: Dict[str, Any]) -> int:
        matching = self._matching(owner_id, collection, filters)
        removed = {document["_id"] for document in matching}
        self.records = [document for document in self.records if document["_id"] not in removed]
        return len(matching)

    async def count(self, owner_id: str, collection: str, filters: Dict[str, Any]) -> int:
        return len(self._matching(owner_id, collection, filters))
