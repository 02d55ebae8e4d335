# /chatflow/engine/errors.py

from typing import Optional, Dict, Any

# Exception hierarchy for flow execution. Every error carries a stable machine
# `code` that ends up in session error records, error-edge variables and
# activity events.


class FlowError(Exception):
    code = "FLOW_ERROR"
    retryable = False

    def __init__(self, message: str, *, node_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                 variables: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.details = details or {}
        # Session variables written even though the node failed.
        self.variables = variables or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "node_id": self.node_id, **self.details}


class UnsupportedNodeError(FlowError):
    """Raised when a node's kind has no registered handler."""
    code = "UNSUPPORTED_NODE"


class NodeConfigurationError(FlowError):
    """Raised when a node's configuration payload fails validation."""
    code = "INVALID_CONFIGURATION"


class NodeExecutionError(FlowError):
    code = "NODE_EXECUTION_FAILED"

    def __init__(self, message: str, *, retryable: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class ExternalCallError(NodeExecutionError):
    code = "EXTERNAL_CALL_FAILED"

    def __init__(self, message: str, *, error_type: str = "request_error", status_code: Optional[int] = None,
                 retryable: bool = True, **kwargs):
        super().__init__(message, retryable=retryable, **kwargs)
        self.error_type = error_type
        self.status_code = status_code


class FlowNotFoundError(FlowError):
    code = "FLOW_NOT_FOUND"


class FlowInactiveError(FlowError):
    code = "FLOW_INACTIVE"


class NodeNotFoundError(FlowError):
    code = "NODE_NOT_FOUND"


class StepLimitExceededError(FlowError):
    code = "STEP_LIMIT_EXCEEDED"


class LoopLimitExceededError(FlowError):
    code = "LOOP_LIMIT_EXCEEDED"


class ConcurrentModificationError(FlowError):
    """The stored document changed since it was read (optimistic version check lost)."""
    code = "CONCURRENT_MODIFICATION"
    retryable = True


class SessionBusyError(FlowError):
    """The per-session lock could not be acquired in time."""
    code = "SESSION_BUSY"
    retryable = True


class DeliveryError(FlowError):
    """One or more outbound messages could not be handed to the channel."""
    code = "DELIVERY_FAILED"
    retryable = True


class GroupSessionError(FlowError):
    code = "GROUP_SESSION_ERROR"

    def __init__(self, message: str, *, reason: str = "invalid", **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason


# Errors for which a node's errorNodeId is never taken: they describe a broken
# flow, not a runtime failure the author can route around.
NON_ROUTABLE_ERRORS = (UnsupportedNodeError, NodeConfigurationError)
