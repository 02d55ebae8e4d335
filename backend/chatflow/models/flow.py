# /chatflow/models/flow.py

from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowNode(BaseModel):
    """
    A single node of an authored flow.

    `kind` is an open string tag. Outgoing transitions live inside
    `configuration` (nextNodeId, trueNodeId/falseNodeId, option lists,
    errorNodeId) rather than as separate edge records.
    """
    id: str
    flow_id: str = ""
    kind: str
    configuration: Dict[str, Any] = Field(default_factory=dict)
    config_version: int = Field(default=1, description="Version of the kind-specific configuration schema")
    ui_position: Optional[Dict[str, float]] = Field(default=None, description="Editor position, not used at runtime")


class FlowDefinition(BaseModel):
    id: str
    owner_id: str
    name: str = ""
    nodes: List[FlowNode] = Field(default_factory=list)
    active: bool = True
    updated_at: datetime = Field(default_factory=utcnow)

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def start_node(self) -> Optional[FlowNode]:
        starts = [node for node in self.nodes if node.kind == "start"]
        return starts[0] if len(starts) == 1 else None
