"""
Node Outcomes

The result a dispatcher hands back to the executor. Every outcome is
exactly one of:
- Success: outputs routed downstream
- Error: message, fails the run unless the node is not required
- Suspended: the node waits for a human response
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from nodeflow.exceptions import ErrorCode


class OutcomeStatus(str, Enum):
    """Tag of a node outcome."""
    SUCCESS = "success"
    ERROR = "error"
    SUSPENDED = "suspended"


class InteractionKind(str, Enum):
    """Kinds of human-in-the-loop interactions."""
    USER_SELECT = "userSelect"
    FORM_INPUT = "formInput"
    TEXT_INPUT = "textInput"
    CONFIRMATION = "confirmation"
    FILE_UPLOAD = "fileUpload"
    CUSTOM_FEEDBACK = "customFeedback"


class InteractionRequest(BaseModel):
    """What a suspended node asks the user for."""
    kind: InteractionKind
    prompt: str = ""
    options: List[Any] = Field(default_factory=list)
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    validation_rules: Dict[str, Any] = Field(default_factory=dict)
    default_value: Any = None


class Success(BaseModel):
    """
    Node completed.

    ``skipped_handles`` names output handles whose edges must not fire
    (the branch a conditional did not take). ``new_variables`` are merged
    into the run's user variables.
    """
    status: Literal[OutcomeStatus.SUCCESS] = OutcomeStatus.SUCCESS
    outputs: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    skipped_handles: List[str] = Field(default_factory=list)
    new_variables: Dict[str, Any] = Field(default_factory=dict)


class Error(BaseModel):
    """Node failed."""
    status: Literal[OutcomeStatus.ERROR] = OutcomeStatus.ERROR
    message: str
    error_code: ErrorCode = ErrorCode.TASK_EXECUTION_FAILED
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Suspended(BaseModel):
    """Node paused, waiting for a resume call."""
    status: Literal[OutcomeStatus.SUSPENDED] = OutcomeStatus.SUSPENDED
    interaction_id: str = Field(default_factory=lambda: str(uuid4()))
    interaction: InteractionRequest
    partial_outputs: Dict[str, Any] = Field(default_factory=dict)


NodeOutcome = Union[Success, Error, Suspended]


def error_from_exception(exc: Exception, prefix: Optional[str] = None) -> Error:
    """Convert an exception raised inside a dispatcher into an Error outcome."""
    message = str(exc) or exc.__class__.__name__
    if prefix:
        message = f"{prefix}: {message}"
    return Error(message=message)
