# /chatflow/services/group_store.py

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from chatflow.engine.errors import ConcurrentModificationError, GroupSessionError
from chatflow.models.flow import utcnow
from chatflow.models.session import AwaitState, GroupSession, GroupSessionStatus
from chatflow.services.db_service import from_document, to_document
from chatflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

ACTIVE = GroupSessionStatus.ACTIVE.value
HAS_ROOM = {"$expr": {"$lt": [{"$size": "$participant_ids"}, "$max_size"]}}


def set_path(target: Dict[str, Any], path: str, value: Any):
    """Applies a dotted-path assignment (`votes.alice`) to a nested dict."""
    parts = path.split(".")
    for part in parts[:-1]:
        nested = target.get(part)
        if not isinstance(nested, dict):
            nested = {}
            target[part] = nested
        target = nested
    target[parts[-1]] = value


class MongoGroupSessionStore:
    """
    Group sessions in MongoDB. Membership changes are single atomic
    find_one_and_update calls, so concurrent joins from different chats never
    duplicate a participant or overfill a group.
    """

    def __init__(self, db, clock: Callable[[], datetime] = utcnow):
        self.collection = db.group_sessions
        self.clock = clock

    async def get(self, group_id: str) -> Optional[GroupSession]:
        return from_document(GroupSession, await self.collection.find_one({"_id": group_id}))

    async def create(self, group: GroupSession) -> GroupSession:
        await self.collection.insert_one(to_document(group))
        database_operations_counter.labels(operation="create_group", status="success").inc()
        return group

    async def save(self, group: GroupSession) -> GroupSession:
        expected = group.version
        group.updated_at = self.clock()
        document = to_document(group)
        document["version"] = expected + 1
        result = await self.collection.replace_one({"_id": group.id, "version": expected}, document)
        if result.matched_count == 0:
            raise ConcurrentModificationError(f"Group session {group.id} changed since version {expected}")
        group.version = expected + 1
        return group

    async def add_participant(self, group_id: str, user_id: str, chat_id: str) -> Tuple[GroupSession, bool]:
        document = await self.collection.find_one_and_update(
            {"_id": group_id, "status": ACTIVE, "participant_ids": {"$ne": user_id}, **HAS_ROOM},
            {
                "$addToSet": {"participant_ids": user_id},
                "$set": {f"participant_chats.{user_id}": chat_id, "updated_at": self.clock()},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if document:
            database_operations_counter.labels(operation="group_join", status="success").inc()
            return from_document(GroupSession, document), True

        group = await self.get(group_id)
        if group is None:
            raise GroupSessionError(f"Group session {group_id} not found", reason="not_found")
        if group.has_participant(user_id):
            return group, False
        if not group.is_active:
            raise GroupSessionError(f"Group session {group_id} is {group.status.value}", reason="inactive")
        raise GroupSessionError(f"Group session {group_id} is full", reason="full")

    async def remove_participant(self, group_id: str, user_id: str) -> Tuple[Optional[GroupSession], bool]:
        now = self.clock()
        document = await self.collection.find_one_and_update(
            {"_id": group_id, "participant_ids": user_id},
            {
                "$pull": {"participant_ids": user_id},
                "$unset": {f"participant_chats.{user_id}": ""},
                "$set": {"updated_at": now},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if document is None:
            return await self.get(group_id), False

        if not document["participant_ids"] and document["status"] == ACTIVE:
            completed = await self.collection.find_one_and_update(
                {"_id": group_id, "participant_ids": {"$size": 0}, "status": ACTIVE},
                {"$set": {"status": GroupSessionStatus.COMPLETED.value, "completed_at": now}, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if completed:
                logger.info(f"Group session {group_id} completed: last participant left")
                document = completed
        return from_document(GroupSession, document), True

    async def set_shared_variables(self, group_id: str, patch: Dict[str, Any]):
        if not patch:
            return
        update = {f"shared_variables.{key}": value for key, value in patch.items()}
        update["updated_at"] = self.clock()
        await self.collection.update_one({"_id": group_id}, {"$set": update, "$inc": {"version": 1}})

    async def complete(self, group_id: str) -> Optional[GroupSession]:
        document = await self.collection.find_one_and_update(
            {"_id": group_id, "status": ACTIVE},
            {"$set": {"status": GroupSessionStatus.COMPLETED.value, "completed_at": self.clock()}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return from_document(GroupSession, document)

    async def set_cursor(self, group_id: str, node_id: Optional[str], awaiting: Optional[AwaitState] = None):
        update = {"current_node_id": node_id, "awaiting": awaiting.value if awaiting else None, "updated_at": self.clock()}
        await self.collection.update_one({"_id": group_id}, {"$set": update, "$inc": {"version": 1}})

    async def find_open(self, flow_id: str) -> Optional[GroupSession]:
        document = await self.collection.find_one(
            {"flow_id": flow_id, "status": ACTIVE, **HAS_ROOM}, sort=[("started_at", ASCENDING)]
        )
        return from_document(GroupSession, document)

    async def archive_idle(self, cutoff: datetime) -> int:
        result = await self.collection.update_many(
            {"status": ACTIVE, "updated_at": {"$lt": cutoff}},
            {"$set": {"status": GroupSessionStatus.ARCHIVED.value, "completed_at": self.clock()}, "$inc": {"version": 1}},
        )
        return result.modified_count

    async def list_by_flow(self, flow_id: str, status: Optional[str] = None, limit: int = 50) -> List[GroupSession]:
        query = {"flow_id": flow_id}
        if status:
            query["status"] = status
        cursor = self.collection.find(query).sort("updated_at", DESCENDING).limit(limit)
        return [from_document(GroupSession, document) async for document in cursor]


class MemoryGroupSessionStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.groups: Dict[str, GroupSession] = {}

    def _touch(self, group: GroupSession):
        group.version += 1
        group.updated_at = self.clock()

    async def get(self, group_id: str) -> Optional[GroupSession]:
        group = self.groups.get(group_id)
        return group.model_copy(deep=True) if group else None

    async def create(self, group: GroupSession) -> GroupSession:
        self.groups[group.id] = group.model_copy(deep=True)
        return group

    async def save(self, group: GroupSession) -> GroupSession:
        stored = self.groups.get(group.id)
        if stored is None or stored.version != group.version:
            raise ConcurrentModificationError(f"Group session {group.id} changed since version {group.version}")
        group.version += 1
        group.updated_at = self.clock()
        self.groups[group.id] = group.model_copy(deep=True)
        return group

    async def add_participant(self, group_id: str, user_id: str, chat_id: str) -> Tuple[GroupSession, bool]:
        group = self.groups.get(group_id)
        if group is None:
            raise GroupSessionError(f"Group session {group_id} not found", reason="not_found")
        if group.has_participant(user_id):
            return group.model_copy(deep=True), False
        if not group.is_active:
            raise GroupSessionError(f"Group session {group_id} is {group.status.value}", reason="inactive")
        if group.is_full:
            raise GroupSessionError(f"Group session {group_id} is full", reason="full")
        group.participant_ids.append(user_id)
        group.participant_chats[user_id] = chat_id
        self._touch(group)
        return group.model_copy(deep=True), True

    async def remove_participant(self, group_id: str, user_id: str) -> Tuple[Optional[GroupSession], bool]:
        group = self.groups.get(group_id)
        if group is None or not group.has_participant(user_id):
            return (group.model_copy(deep=True) if group else None), False
        group.participant_ids.remove(user_id)
        group.participant_chats.pop(user_id, None)
        self._touch(group)
        if not group.participant_ids and group.is_active:
            group.status = GroupSessionStatus.COMPLETED
            group.completed_at = self.clock()
            logger.info(f"Group session {group_id} completed: last participant left")
        return group.model_copy(deep=True), True

    async def set_shared_variables(self, group_id: str, patch: Dict[str, Any]):
        group = self.groups.get(group_id)
        if group is None or not patch:
            return
        for key, value in patch.items():
            set_path(group.shared_variables, key, value)
        self._touch(group)

    async def complete(self, group_id: str) -> Optional[GroupSession]:
        group = self.groups.get(group_id)
        if group is None or not group.is_active:
            return None
        group.status = GroupSessionStatus.COMPLETED
        group.completed_at = self.clock()
        self._touch(group)
        return group.model_copy(deep=True)

    async def set_cursor(self, group_id: str, node_id: Optional[str], awaiting: Optional[AwaitState] = None):
        group = self.groups.get(group_id)
        if group is not None:
            group.current_node_id = node_id
            group.awaiting = awaiting
            self._touch(group)

    async def find_open(self, flow_id: str) -> Optional[GroupSession]:
        candidates = [g for g in self.groups.values() if g.flow_id == flow_id and g.is_active and not g.is_full]
        if not candidates:
            return None
        return min(candidates, key=lambda g: g.started_at).model_copy(deep=True)

    async def archive_idle(self, cutoff: datetime) -> int:
        archived = 0
        for group in self.groups.values():
            if group.is_active and group.updated_at < cutoff:
                group.status = GroupSessionStatus.ARCHIVED
                group.completed_at = self.clock()
                group.version += 1
                archived += 1
        return archived

    async def list_by_flow(self, flow_id: str, status: Optional[str] = None, limit: int = 50) -> List[GroupSession]:
        matching = [
            g for g in self.groups.values()
            if g.flow_id == flow_id and (status is None or g.status.value == status)
        ]
        matching.sort(key=lambda g: g.updated_at, reverse=True)
        return [g.model_copy(deep=True) for g in matching[:limit]]
