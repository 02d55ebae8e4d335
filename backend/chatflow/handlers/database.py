# /chatflow/handlers/database.py

import logging
from typing import Any, Dict, Literal, Optional

from pydantic import Field, model_validator

from chatflow.engine.context import ExecutionContext, Trigger
from chatflow.engine.errors import FlowError, NodeExecutionError
from chatflow.engine.registry import NodeConfig, registry
from chatflow.engine.results import NodeResult

logger = logging.getLogger(__name__)


class DatabaseConfig(NodeConfig):
    operation: Literal["select", "insert", "update", "delete", "count"] = "select"
    collection: str = Field(min_length=1, max_length=100)
    filter: Dict[str, Any] = Field(default_factory=dict)
    data: Dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(default=100, ge=1, le=1000)
    result_variable: Optional[str] = None

    @model_validator(mode="after")
    def guard_bulk_writes(self):
        if self.operation in ("update", "delete") and not self.filter:
            raise ValueError(f"'{self.operation}' requires a non-empty filter")
        if self.operation in ("insert", "update") and not self.data:
            raise ValueError(f"'{self.operation}' requires 'data'")
        return self


@registry.register("database")
class DatabaseHandler:
    """
    Generic read/write against the flow owner's record collections.
    Filters are equality matches on record fields; values are templated.
    """
    config_model = DatabaseConfig
    config_version = 1

    async def execute(self, ctx: ExecutionContext, config: DatabaseConfig, trigger: Trigger) -> NodeResult:
        records = ctx.services.records
        owner_id = ctx.owner_id
        collection = ctx.render_text(config.collection)
        filters = ctx.render(config.filter)
        data = ctx.render(config.data)
        prefix = f"db_{ctx.node.id}"

        try:
            if config.operation == "select":
                result = await records.select(owner_id, collection, filters, limit=config.limit)
                count = len(result)
            elif config.operation == "insert":
                result = await records.insert(owner_id, collection, data)
                count = 1
            elif config.operation == "update":
                count = await records.update(owner_id, collection, filters, data)
                result = count
            elif config.operation == "delete":
                count = await records.delete(owner_id, collection, filters)
                result = count
            else:
                count = await records.count(owner_id, collection, filters)
                result = count
        except FlowError:
            raise
        except Exception as e:
            logger.error(f"Database node {ctx.node.id} {config.operation} on '{collection}' failed: {e}", exc_info=True)
            raise NodeExecutionError(
                f"Database {config.operation} failed: {e}",
                node_id=ctx.node.id,
                retryable=True,
                variables={f"{prefix}_success": False, f"{prefix}_error": str(e)},
            ) from e

        variables = {f"{prefix}_success": True, f"{prefix}_count": count}
        variables[config.result_variable or f"{prefix}_result"] = result
        return NodeResult.goto(config.next_node_id, session_vars=variables)
