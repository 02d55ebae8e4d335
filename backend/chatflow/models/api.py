# /chatflow/models/api.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from chatflow.models.events import InboundEvent
from chatflow.models.flow import FlowNode, utcnow

# Request and response bodies of the REST API.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
    version: str


class FlowUploadRequest(BaseModel):
    id: Optional[str] = None
    owner_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    nodes: List[FlowNode]
    active: bool = True


class InboundEventRequest(BaseModel):
    """A channel-agnostic inbound event posted straight to a flow."""
    flow_id: str
    event: InboundEvent
    wait: bool = Field(default=True, description="Run synchronously and return the outcome")
