"""
Custom Exception Classes

This module defines the exceptions raised by the workflow engine,
providing specific error types with standardized error codes and
detailed error information.
"""

from typing import Any, Dict, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """
    Standardized error codes for client-side handling.

    Format: CATEGORY_SPECIFIC_ERROR
    Categories: RESOURCE, VALIDATION, DISPATCH, SERVICE, TASK, INTERACTION, TIMEOUT
    """
    # Resource errors (2xxx)
    RESOURCE_NOT_FOUND = "RESOURCE_001"
    RESOURCE_CONFLICT = "RESOURCE_002"
    RESOURCE_ALREADY_EXISTS = "RESOURCE_003"

    # Validation errors (3xxx)
    VALIDATION_FAILED = "VALIDATION_001"
    VALIDATION_FIELD_INVALID = "VALIDATION_003"

    # Dispatch errors
    DISPATCH_NOT_FOUND = "DISPATCH_001"

    # Service errors (4xxx)
    SERVICE_UNAVAILABLE = "SERVICE_001"
    SERVICE_REDIS_ERROR = "SERVICE_002"
    SERVICE_EXTERNAL_ERROR = "SERVICE_004"

    # Task (node) execution errors (5xxx)
    TASK_EXECUTION_FAILED = "TASK_001"
    TASK_TIMEOUT = "TASK_003"
    TASK_CANCELLED = "TASK_004"
    TASK_INVALID_STATE = "TASK_005"

    # Interaction errors
    INTERACTION_NOT_FOUND = "INTERACTION_001"
    INTERACTION_ALREADY_PROCESSED = "INTERACTION_002"
    INTERACTION_EXPIRED = "INTERACTION_003"

    # Timeout errors (7xxx)
    TIMEOUT_EXCEEDED = "TIMEOUT_001"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "INTERNAL_001"


class AppException(Exception):
    """
    Base engine exception

    All custom exceptions inherit from this class so callers can handle
    engine failures uniformly.

    Attributes:
        message: Human-readable error message
        error_code: Standardized error code for client handling
        details: Additional error details as a dictionary
        retryable: Whether the operation can be retried
        retry_after: Suggested retry delay in seconds (if retryable)
    """
    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        retry_after: Optional[int] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary"""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable
        }
        if self.retry_after:
            result["retry_after"] = self.retry_after
        return result


class NotFoundError(AppException):
    """
    Resource not found error

    Example:
        raise NotFoundError("Interaction", "0b7e...")
    """
    def __init__(
        self,
        resource: str,
        identifier: str,
        error_code: ErrorCode = ErrorCode.RESOURCE_NOT_FOUND,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"{resource} with id {identifier} not found",
            error_code=error_code,
            details={"resource": resource, "identifier": identifier}
        )


class ValidationError(AppException):
    """
    Validation error

    Raised when a workflow definition is malformed (no nodes, no entry
    nodes, dangling edges, invalid node configuration). Always raised
    before any node is dispatched.

    Example:
        raise ValidationError("workflow has no nodes")
    """
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details=details
        )


class NodeConfigError(ValidationError):
    """
    Invalid node configuration

    Example:
        raise NodeConfigError("loop", "maxIterations must be greater than 0")
    """
    def __init__(self, node_id: Optional[str], reason: str, errors: Optional[list] = None):
        super().__init__(
            f"invalid configuration for node {node_id}: {reason}",
            details={"node_id": node_id, "errors": errors or []},
            error_code=ErrorCode.VALIDATION_FIELD_INVALID,
        )
        self.node_id = node_id


class ConflictError(AppException):
    """
    Resource conflict error

    Raised when an operation conflicts with the current state
    (e.g., resuming an interaction that was already processed).
    """
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details=details
        )


class ServiceUnavailableError(AppException):
    """
    External service unavailable error

    Raised when a backing service (Redis) is unavailable.
    This is a retryable error.
    """
    def __init__(
        self,
        service: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: int = 5
    ):
        error_code = ErrorCode.SERVICE_UNAVAILABLE
        if service.lower() == "redis":
            error_code = ErrorCode.SERVICE_REDIS_ERROR

        super().__init__(
            f"Service {service} is unavailable",
            error_code=error_code,
            details={**(details or {}), "service": service},
            retryable=True,
            retry_after=retry_after
        )


# =============================================================================
# Dispatch
# =============================================================================


class DispatchNotFoundError(NotFoundError):
    """Raised when no dispatcher is registered for a node type."""
    def __init__(self, node_type: str):
        super().__init__(
            "Dispatcher",
            node_type,
            error_code=ErrorCode.DISPATCH_NOT_FOUND,
            message=f"dispatcher not found for node type: {node_type}",
        )
        self.node_type = node_type


class DispatcherAlreadyRegisteredError(ConflictError):
    """Raised when registering a node type twice without overwrite."""
    def __init__(self, node_type: str):
        super().__init__(
            f"Dispatcher for node type '{node_type}' already registered. "
            "Use overwrite=True to replace.",
            details={"node_type": node_type},
            error_code=ErrorCode.RESOURCE_ALREADY_EXISTS,
        )


# =============================================================================
# Execution
# =============================================================================


class WorkflowExecutionError(AppException):
    """
    Base exception for workflow run failures.

    Carries the id of the node that caused the failure when known.
    """
    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.TASK_EXECUTION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details={**(details or {}), "node_id": node_id},
        )
        self.node_id = node_id


class NodeExecutionError(WorkflowExecutionError):
    """Raised when a required node reports an error."""
    pass


class NodeTimeoutError(NodeExecutionError):
    """Raised when a single node exceeds its deadline."""
    def __init__(self, node_id: str, timeout: float):
        super().__init__(
            f"node '{node_id}' timed out after {timeout}s",
            node_id=node_id,
            error_code=ErrorCode.TASK_TIMEOUT,
            details={"timeout": timeout},
        )
        self.timeout = timeout


class WorkflowCancelledError(WorkflowExecutionError):
    """Raised when a run observes its cancellation token."""
    def __init__(self, message: str = "Workflow cancelled", node_id: Optional[str] = None):
        super().__init__(message, node_id=node_id, error_code=ErrorCode.TASK_CANCELLED)


class OperationTimeoutError(AppException):
    """
    Operation timeout error

    Raised when an operation exceeds its time limit.
    """
    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            f"{operation} timed out after {timeout_seconds}s",
            error_code=ErrorCode.TIMEOUT_EXCEEDED,
            details={**(details or {}), "operation": operation, "timeout_seconds": timeout_seconds},
            retryable=True,
        )


class RunTimeoutError(OperationTimeoutError):
    """Raised when a whole workflow run exceeds its deadline."""
    def __init__(self, timeout_seconds: float):
        super().__init__("workflow run", timeout_seconds)


class SuspensionSignal(Exception):
    """
    Control-flow signal raised inside the executor when a node suspends.

    Not an error: the executor turns it into a suspended result.
    """

    def __init__(self, node_id: str, interaction_id: str):
        super().__init__(f"Node {node_id} suspended for interaction {interaction_id}")
        self.node_id = node_id
        self.interaction_id = interaction_id


# =============================================================================
# Interactions
# =============================================================================


class InteractionNotFoundError(NotFoundError):
    """Raised when an interaction does not exist (or was swept)."""
    def __init__(self, interaction_id: str):
        super().__init__("Interaction", interaction_id, error_code=ErrorCode.INTERACTION_NOT_FOUND)
        self.interaction_id = interaction_id


class InteractionAlreadyProcessedError(ConflictError):
    """Raised when resuming an interaction a second time."""
    def __init__(self, interaction_id: str):
        super().__init__(
            f"Interaction {interaction_id} has already been processed",
            details={"interaction_id": interaction_id},
            error_code=ErrorCode.INTERACTION_ALREADY_PROCESSED,
        )
        self.interaction_id = interaction_id


class InteractionExpiredError(AppException):
    """Raised when resuming an interaction past its deadline."""
    def __init__(self, interaction_id: str):
        super().__init__(
            f"Interaction {interaction_id} has expired",
            error_code=ErrorCode.INTERACTION_EXPIRED,
            details={"interaction_id": interaction_id},
        )
        self.interaction_id = interaction_id
