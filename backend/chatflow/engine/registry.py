# /chatflow/engine/registry.py

import logging
from typing import Any, Dict, List, Optional, Protocol, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from chatflow.engine.context import ExecutionContext, Trigger
from chatflow.engine.errors import NodeConfigurationError, UnsupportedNodeError
from chatflow.engine.results import NodeResult
from chatflow.models.flow import FlowNode

logger = logging.getLogger(__name__)


class NodeConfig(BaseModel):
    """
    Base for every kind-specific configuration model.

    Configuration is authored in camelCase (`nextNodeId`); unknown keys are
    kept so newer editors can store fields older handlers ignore.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    next_node_id: Optional[str] = None
    error_node_id: Optional[str] = None

    def successors(self) -> List[str]:
        """Every node id this configuration can transition to."""
        return [node_id for node_id in (self.next_node_id, self.error_node_id) if node_id]


class NodeHandler(Protocol):
    kind: str
    config_model: Type[NodeConfig]
    config_version: int

    async def execute(self, ctx: ExecutionContext, config: Any, trigger: Trigger) -> NodeResult:
        ...


class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, NodeHandler] = {}

    def register(self, kind: str):
        """Class decorator registering one handler instance under `kind`."""
        def decorator(handler_cls):
            handler = handler_cls()
            handler.kind = kind
            if kind in self._handlers:
                logger.warning(f"Replacing handler registered for node kind '{kind}'")
            self._handlers[kind] = handler
            return handler_cls
        return decorator

    def add(self, kind: str, handler: NodeHandler):
        handler.kind = kind
        self._handlers[kind] = handler

    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    def iterates(self, kind: str) -> bool:
        """True for kinds that re-enter a body (loops); their visits are bounded by their own cap."""
        return getattr(self._handlers.get(kind), "iterates", False)

    def get(self, kind: str) -> NodeHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnsupportedNodeError(f"No handler is registered for node kind '{kind}'", details={"kind": kind})
        return handler

    def parse(self, node: FlowNode) -> NodeConfig:
        """Resolves the node's handler and validates its configuration."""
        handler = self.get(node.kind)
        supported = getattr(handler, "config_version", 1)
        if node.config_version > supported:
            raise NodeConfigurationError(
                f"Node '{node.id}' uses configuration version {node.config_version}, "
                f"handler for '{node.kind}' supports up to {supported}",
                node_id=node.id,
            )
        try:
            return handler.config_model.model_validate(node.configuration)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'configuration'}: {err['msg']}" for err in e.errors()
            )
            raise NodeConfigurationError(
                f"Invalid configuration for {node.kind} node '{node.id}': {problems}",
                node_id=node.id,
                details={"kind": node.kind},
            ) from e


# Globally accessible instance
registry = HandlerRegistry()
