# /chatflow/services/session_store.py

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from chatflow.engine.errors import ConcurrentModificationError
from chatflow.models.flow import utcnow
from chatflow.models.session import Session, SessionStatus
from chatflow.services.db_service import from_document, to_document
from chatflow.utils.metrics import database_operations_counter

# Individual session persistence. `save` is a conditional update on the
# session's `version`: a writer holding a stale copy gets
# ConcurrentModificationError instead of silently overwriting newer progress.

logger = logging.getLogger(__name__)


class MongoSessionStore:
    def __init__(self, db, clock: Callable[[], datetime] = utcnow):
        self.collection = db.sessions
        self.clock = clock

    async def get(self, session_id: str) -> Optional[Session]:
        return from_document(Session, await self.collection.find_one({"_id": session_id}))

    async def get_active(self, session_key: str) -> Optional[Session]:
        document = await self.collection.find_one({"session_key": session_key, "status": SessionStatus.ACTIVE.value})
        return from_document(Session, document)

    async def get_latest(self, session_key: str) -> Optional[Session]:
        document = await self.collection.find_one({"session_key": session_key}, sort=[("created_at", DESCENDING)])
        return from_document(Session, document)

    async def create(self, session: Session) -> Session:
        try:
            await self.collection.insert_one(to_document(session))
        except DuplicateKeyError:
            database_operations_counter.labels(operation="create_session", status="conflict").inc()
            raise ConcurrentModificationError(f"An active session already exists for {session.session_key}")
        database_operations_counter.labels(operation="create_session", status="success").inc()
        return session

    async def save(self, session: Session) -> Session:
        expected = session.version
        document = to_document(session)
        document["version"] = expected + 1
        result = await self.collection.replace_one({"_id": session.id, "version": expected}, document)
        if result.matched_count == 0:
            database_operations_counter.labels(operation="save_session", status="conflict").inc()
            raise ConcurrentModificationError(
                f"Session {session.id} changed since version {expected}", details={"session_key": session.session_key}
            )
        session.version = expected + 1
        database_operations_counter.labels(operation="save_session", status="success").inc()
        return session

    async def expire_idle(self, cutoff: datetime) -> int:
        """
        Expires active sessions untouched since `cutoff`. A session waiting on a
        delay or timer counts as active until its resume time has also passed.
        """
        result = await self.collection.update_many(
            {
                "status": SessionStatus.ACTIVE.value,
                "last_activity_at": {"$lt": cutoff},
                "$or": [{"resume_at": None}, {"resume_at": {"$lt": cutoff}}],
            },
            {"$set": {"status": SessionStatus.EXPIRED.value, "completed_at": self.clock()}, "$inc": {"version": 1}},
        )
        return result.modified_count

    async def list_by_flow(self, flow_id: str, status: Optional[str] = None, limit: int = 50) -> List[Session]:
        query = {"flow_id": flow_id}
        if status:
            query["status"] = status
        cursor = self.collection.find(query).sort("last_activity_at", DESCENDING).limit(limit)
        return [from_document(Session, document) async for document in cursor]

    async def list_by_group(self, group_session_id: str) -> List[Session]:
        cursor = self.collection.find(
            {"group_session_id": group_session_id, "status": SessionStatus.ACTIVE.value}
        )
        return [from_document(Session, document) async for document in cursor]


class MemorySessionStore:
    """Same contract as MongoSessionStore, kept in process memory."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.sessions: Dict[str, Session] = {}

    def _active_for(self, session_key: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.session_key == session_key and session.status == SessionStatus.ACTIVE:
                return session
        return None

    async def get(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_active(self, session_key: str) -> Optional[Session]:
        session = self._active_for(session_key)
        return session.model_copy(deep=True) if session else None

    async def get_latest(self, session_key: str) -> Optional[Session]:
        matching = [s for s in self.sessions.values() if s.session_key == session_key]
        if not matching:
            return None
        return max(matching, key=lambda s: s.created_at).model_copy(deep=True)

    async def create(self, session: Session) -> Session:
        if session.status == SessionStatus.ACTIVE and self._active_for(session.session_key):
            raise ConcurrentModificationError(f"An active session already exists for {session.session_key}")
        self.sessions[session.id] = session.model_copy(deep=True)
        return session

    async def save(self, session: Session) -> Session:
        stored = self.sessions.get(session.id)
        if stored is None or stored.version != session.version:
            raise ConcurrentModificationError(
                f"Session {session.id} changed since version {session.version}",
                details={"session_key": session.session_key},
            )
        session.version += 1
        self.sessions[session.id] = session.model_copy(deep=True)
        return session

    async def expire_idle(self, cutoff: datetime) -> int:
        expired = 0
        for session in self.sessions.values():
            waiting = session.resume_at is not None and session.resume_at >= cutoff
            if session.status == SessionStatus.ACTIVE and session.last_activity_at < cutoff and not waiting:
                session.status = SessionStatus.EXPIRED
                session.completed_at = self.clock()
                session.version += 1
                expired += 1
        return expired

    async def list_by_flow(self, flow_id: str, status: Optional[str] = None, limit: int = 50) -> List[Session]:
        matching = [
            s for s in self.sessions.values()
            if s.flow_id == flow_id and (status is None or s.status.value == status)
        ]
        matching.sort(key=lambda s: s.last_activity_at, reverse=True)
        return [s.model_copy(deep=True) for s in matching[:limit]]

    async def list_by_group(self, group_session_id: str) -> List[Session]:
        return [
            s.model_copy(deep=True) for s in self.sessions.values()
            if s.group_session_id == group_session_id and s.status == SessionStatus.ACTIVE
        ]
