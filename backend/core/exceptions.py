"""Custom exceptions for the workflow execution engine."""

from typing import Any, List, Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code used when surfaced through the API
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(WorkflowEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ConflictError(WorkflowEngineError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class ValidationError(WorkflowEngineError):
    """Malformed workflow graph: cycle, unknown node type, unsatisfied input.

    Raised before any node runs; the run never reaches ``running``.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        node_id: Optional[str] = None,
        cycle: Optional[List[str]] = None,
    ):
        """Initialize ValidationError with 422 status code."""
        self.node_id = node_id
        self.cycle = cycle
        super().__init__(message, 422)


class InvalidExecutorError(WorkflowEngineError):
    """Executor does not satisfy the node contract."""

    def __init__(self, message: str = "Invalid node executor"):
        super().__init__(message, 422)


class InvalidStateTransition(WorkflowEngineError):
    """Illegal execution status change (terminal states are sinks)."""

    def __init__(self, message: str = "Invalid state transition"):
        super().__init__(message, 409)


class ExecutionError(WorkflowEngineError):
    """A node's own logic failed."""

    def __init__(
        self,
        message: str = "Node execution failed",
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.node_id = node_id
        self.node_type = node_type
        self.cause = cause
        super().__init__(message, 500)

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class NodeTimeoutError(ExecutionError):
    """A node exceeded its declared execution budget."""

    def __init__(
        self,
        message: str = "Node execution timed out",
        timeout_ms: Optional[float] = None,
        **kwargs: Any,
    ):
        self.timeout_ms = timeout_ms
        super().__init__(message, **kwargs)


class TransportError(ExecutionError):
    """Network or connection failure for an outbound call.

    An HTTP response with a non-2xx status is not a transport error.
    """


class ServiceCallError(WorkflowEngineError):
    """Error returned by an external service client."""

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        payload: Any = None,
    ):
        self.payload = payload
        super().__init__(message, status_code)
