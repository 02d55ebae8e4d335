# /chatflow/services/flow_store.py

import logging
from typing import Dict, List, Optional

from chatflow.engine.errors import FlowNotFoundError
from chatflow.models.flow import FlowDefinition, utcnow
from chatflow.services.db_service import from_document, to_document

# Flow definitions are authored elsewhere and read on every event, so
# deactivation is observed by the very next step of any session.

logger = logging.getLogger(__name__)


def _stamp(flow: FlowDefinition) -> FlowDefinition:
    for node in flow.nodes:
        node.flow_id = flow.id
    flow.updated_at = utcnow()
    return flow


class MongoFlowStore:
    def __init__(self, db):
        self.collection = db.flows

    async def get(self, flow_id: str) -> FlowDefinition:
        flow = from_document(FlowDefinition, await self.collection.find_one({"_id": flow_id}))
        if flow is None:
            raise FlowNotFoundError(f"Flow '{flow_id}' does not exist")
        return flow

    async def save(self, flow: FlowDefinition) -> FlowDefinition:
        _stamp(flow)
        await self.collection.replace_one({"_id": flow.id}, to_document(flow), upsert=True)
        logger.info(f"Flow {flow.id} saved with {len(flow.nodes)} nodes")
        return flow

    async def set_active(self, flow_id: str, active: bool) -> FlowDefinition:
        result = await self.collection.update_one({"_id": flow_id}, {"$set": {"active": active, "updated_at": utcnow()}})
        if result.matched_count == 0:
            raise FlowNotFoundError(f"Flow '{flow_id}' does not exist")
        logger.info(f"Flow {flow_id} {'activated' if active else 'deactivated'}")
        return await self.get(flow_id)

    async def list(self, owner_id: Optional[str] = None) -> List[FlowDefinition]:
        query = {"owner_id": owner_id} if owner_id else {}
        return [from_document(FlowDefinition, document) async for document in self.collection.find(query)]


class MemoryFlowStore:
    def __init__(self):
        self.flows: Dict[str, FlowDefinition] = {}

    async def get(self, flow_id: str) -> FlowDefinition:
        flow = self.flows.get(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow '{flow_id}' does not exist")
        return flow.model_copy(deep=True)

    async def save(self, flow: FlowDefinition) -> FlowDefinition:
        self.flows[flow.id] = _stamp(flow).model_copy(deep=True)
        return flow

    async def set_active(self, flow_id: str, active: bool) -> FlowDefinition:
        if flow_id not in self.flows:
            raise FlowNotFoundError(f"Flow '{flow_id}' does not exist")
        self.flows[flow_id].active = active
        self.flows[flow_id].updated_at = utcnow()
        return self.flows[flow_id].model_copy(deep=True)

    async def list(self, owner_id: Optional[str] = None) -> List[FlowDefinition]:
        return [f.model_copy(deep=True) for f in self.flows.values() if owner_id is None or f.owner_id == owner_id]
