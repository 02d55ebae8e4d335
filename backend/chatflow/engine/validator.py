# /chatflow/engine/validator.py

"""
Authoring-time checks for flow definitions.

Run when a flow is uploaded, before it is stored. Pure: no store access and no
side effects, so the same definition always produces the same result.
"""

from typing import List, Optional, TypedDict

from chatflow.engine.errors import FlowError
from chatflow.engine.registry import HandlerRegistry
from chatflow.models.flow import FlowDefinition


class ValidationIssue(TypedDict):
    """One problem found in a flow definition."""
    error_code: str
    node_id: Optional[str]
    message: str


class ValidationResult(TypedDict):
    """Result of validating a flow definition."""
    is_valid: bool
    issues: List[ValidationIssue]


def _issue(error_code: str, message: str, node_id: Optional[str] = None) -> ValidationIssue:
    return {"error_code": error_code, "node_id": node_id, "message": message}


def validate_flow(flow: FlowDefinition, registry: HandlerRegistry) -> ValidationResult:
    """
    Validate a flow definition.

    Checks:
        - node ids are unique
        - exactly one `start` node exists
        - every node kind has a handler and its configuration parses
        - every edge (next, error, branch, button...) points at an existing node

    Returns:
        ValidationResult listing every issue found, not just the first
    """
    issues: List[ValidationIssue] = []
    node_ids = set()
    for node in flow.nodes:
        if node.id in node_ids:
            issues.append(_issue("DUPLICATE_NODE", f"Node id '{node.id}' is used more than once", node.id))
        node_ids.add(node.id)

    starts = [node for node in flow.nodes if node.kind == "start"]
    if len(starts) != 1:
        issues.append(_issue("START_NODE_COUNT", f"A flow needs exactly one start node, found {len(starts)}"))

    for node in flow.nodes:
        try:
            config = registry.parse(node)
        except FlowError as e:
            issues.append(_issue(e.code, e.message, node.id))
            continue
        for target in config.successors():
            if target not in node_ids:
                issues.append(_issue("UNKNOWN_TARGET", f"Edge from '{node.id}' points at unknown node '{target}'", node.id))

    return {"is_valid": not issues, "issues": issues}
