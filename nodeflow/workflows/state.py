"""
Workflow State Management

Manages the state of a single workflow run:
- ExecutionContext: variables and node outputs threaded between nodes
- RunState: scheduler bookkeeping (statuses, worklist, loop frames)
- NodeMetrics: per-dispatch timing and usage counters

Both ExecutionContext and RunState serialize to plain dicts so a paused
run can be checkpointed and rebuilt later.
"""

import copy
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .nodes import NodeStatus

logger = logging.getLogger(__name__)


SYSTEM_PREFIX = "__"
VARIABLES_KEY = "__variables"

# System variables set by the engine at run start
SYS_EXECUTION_ID = "__execution_id"
SYS_WORKFLOW_ID = "__workflow_id"
SYS_USER_ID = "__user_id"
SYS_TEAM_ID = "__team_id"
SYS_APP_ID = "__app_id"
SYS_CHAT_ID = "__chat_id"
SYS_START_TIME = "__start_time"

# Injected into a single node's inputs when it is re-dispatched on resume
SYS_RESUMING = "__resuming_from_interaction"
SYS_INTERACTION_ID = "__interaction_id"
SYS_INTERACTION_RESPONSE = "__interaction_response"


def is_system_key(key: str) -> bool:
    """Check whether a variable name is engine-reserved."""
    return key.startswith(SYSTEM_PREFIX)


class EdgeStatus(str, Enum):
    """Runtime status of an edge."""
    WAITING = "waiting"
    ACTIVE = "active"
    SKIPPED = "skipped"


class ContextScope(BaseModel):
    """One level of the context: user variables and node outputs."""
    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)  # node_id -> {handle: value}


class ExecutionContext(BaseModel):
    """
    Variables visible to nodes during one run.

    System variables are engine-owned and always win on lookup. User
    variables and node outputs live in a stack of scopes; loop bodies
    push a child scope that is merged into its parent when the loop ends.
    """
    system_variables: Dict[str, Any] = Field(default_factory=dict)
    scopes: List[ContextScope] = Field(default_factory=lambda: [ContextScope()])

    @classmethod
    def create(
        cls,
        defaults: Optional[Dict[str, Any]] = None,
        inputs: Optional[Dict[str, Any]] = None,
        system_variables: Optional[Dict[str, Any]] = None,
    ) -> "ExecutionContext":
        """
        Build the context for a new run.

        Caller inputs override workflow defaults. Reserved keys supplied by
        the caller are dropped.
        """
        context = cls()
        for source in (defaults or {}, inputs or {}):
            for key, value in source.items():
                if is_system_key(key):
                    logger.warning(f"Ignoring reserved variable supplied by caller: {key}")
                    continue
                context.set_variable(key, value)

        for key, value in (system_variables or {}).items():
            context.set_system_variable(key, value)
        return context

    # -------------------------------------------------------------------------
    # Variables
    # -------------------------------------------------------------------------

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Look up a variable: system first, then scopes innermost first."""
        if key in self.system_variables:
            return self.system_variables[key]
        for scope in reversed(self.scopes):
            if key in scope.variables:
                return scope.variables[key]
        return default

    def has_variable(self, key: str) -> bool:
        if key in self.system_variables:
            return True
        return any(key in scope.variables for scope in self.scopes)

    def set_variable(self, key: str, value: Any) -> None:
        """Set a user variable in the current scope."""
        if is_system_key(key):
            raise ValueError(f"Variable name is reserved: {key}")
        self.scopes[-1].variables[key] = value

    def update_variables(self, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            self.set_variable(key, value)

    def set_system_variable(self, key: str, value: Any) -> None:
        """Set an engine-owned variable."""
        if not is_system_key(key):
            raise ValueError(f"System variable must start with '{SYSTEM_PREFIX}': {key}")
        self.system_variables[key] = value

    def user_variables(self) -> Dict[str, Any]:
        """User variables merged from the outermost to the innermost scope."""
        merged: Dict[str, Any] = {}
        for scope in self.scopes:
            merged.update(scope.variables)
        return merged

    # -------------------------------------------------------------------------
    # Node outputs
    # -------------------------------------------------------------------------

    def set_outputs(self, node_id: str, outputs: Dict[str, Any]) -> None:
        """Record a node's outputs in the current scope."""
        self.scopes[-1].outputs[node_id] = dict(outputs)

    def get_node_outputs(self, node_id: str) -> Optional[Dict[str, Any]]:
        for scope in reversed(self.scopes):
            if node_id in scope.outputs:
                return scope.outputs[node_id]
        return None

    def get_output(self, node_id: str, handle: str, default: Any = None) -> Any:
        outputs = self.get_node_outputs(node_id)
        if outputs is None:
            return default
        return outputs.get(handle, default)

    def has_output(self, node_id: str, handle: str) -> bool:
        outputs = self.get_node_outputs(node_id)
        return outputs is not None and handle in outputs

    def clear_outputs(self, node_ids: Iterable[str]) -> None:
        """Drop outputs of the given nodes from the current scope."""
        scope = self.scopes[-1]
        for node_id in node_ids:
            scope.outputs.pop(node_id, None)

    def all_outputs(self) -> Dict[str, Dict[str, Any]]:
        merged: Dict[str, Dict[str, Any]] = {}
        for scope in self.scopes:
            merged.update(scope.outputs)
        return merged

    # -------------------------------------------------------------------------
    # Scopes
    # -------------------------------------------------------------------------

    @property
    def depth(self) -> int:
        return len(self.scopes)

    def push_scope(self) -> None:
        """Open a child scope (loop body)."""
        self.scopes.append(ContextScope())

    def pop_scope(self, merge: bool = True) -> None:
        """Close the current child scope, merging it into its parent."""
        if len(self.scopes) == 1:
            raise RuntimeError("Cannot pop the root scope")
        child = self.scopes.pop()
        if merge:
            parent = self.scopes[-1]
            parent.variables.update(child.variables)
            parent.outputs.update(child.outputs)

    def scope_view(self) -> Dict[str, Any]:
        """
        Flat read-only view used for templating, conditions and code.

        Node outputs appear under their node ID; user variables take
        precedence over a node ID of the same name.
        """
        view: Dict[str, Any] = {}
        view.update(copy.deepcopy(self.all_outputs()))
        view.update(copy.deepcopy(self.user_variables()))
        return view

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls.model_validate(data)


class LoopFrame(BaseModel):
    """Engine-owned iteration state of an active loop."""
    loop_start_id: str
    loop_end_id: str
    loop_type: str = "forEach"
    loop_variable: str = "item"
    condition: str = ""
    items: List[Any] = Field(default_factory=list)
    iteration: int = 1  # 1-based number of the iteration in progress
    index: int = 0
    max_iterations: int = 100
    results: List[Any] = Field(default_factory=list)

    @property
    def total_items(self) -> int:
        return len(self.items)


@dataclass
class NodeMetrics:
    """Metrics of a single node dispatch."""
    node_id: str
    node_type: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    execution_time_ms: float = 0.0
    status: str = "running"
    error: Optional[str] = None
    retry_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    def complete(self, status: str, error: Optional[str] = None) -> None:
        """Mark dispatch as complete."""
        self.completed_at = datetime.utcnow()
        self.execution_time_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.status = status
        self.error = error

    def record_usage(self, metadata: Dict[str, Any]) -> None:
        """Pick up token and cost counters reported by a dispatcher."""
        self.input_tokens = int(metadata.get("input_tokens", 0) or 0)
        self.output_tokens = int(metadata.get("output_tokens", 0) or 0)
        self.total_tokens = int(
            metadata.get("total_tokens", 0) or (self.input_tokens + self.output_tokens)
        )
        self.cost = float(metadata.get("cost", 0.0) or 0.0)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data


class RunState(BaseModel):
    """
    Scheduler state of one run.

    Stores:
    - Node and edge statuses
    - The FIFO worklist
    - Per-node run counts and errors
    - Active loop frames
    """
    node_status: Dict[str, NodeStatus] = Field(default_factory=dict)
    edge_status: Dict[str, EdgeStatus] = Field(default_factory=dict)
    worklist: List[str] = Field(default_factory=list)
    run_counts: Dict[str, int] = Field(default_factory=dict)

    completed_nodes: List[str] = Field(default_factory=list)
    failed_nodes: List[str] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    loop_frames: Dict[str, LoopFrame] = Field(default_factory=dict)  # loop_start_id -> frame
    node_metrics: List[Dict[str, Any]] = Field(default_factory=list)
    nodes_processed: int = 0

    # Set while the paused node is being re-dispatched
    resuming_node: Optional[str] = None

    started_at: Optional[datetime] = None
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def initial(cls, node_ids: Iterable[str], edge_ids: Iterable[str], entry_ids: Iterable[str]) -> "RunState":
        state = cls(
            node_status={node_id: NodeStatus.PENDING for node_id in node_ids},
            edge_status={edge_id: EdgeStatus.WAITING for edge_id in edge_ids},
            worklist=list(entry_ids),
        )
        state.started_at = datetime.utcnow()
        return state

    def status_of(self, node_id: str) -> NodeStatus:
        return self.node_status.get(node_id, NodeStatus.PENDING)

    def set_status(self, node_id: str, status: NodeStatus) -> None:
        self.node_status[node_id] = status
        self.last_updated = datetime.utcnow()

    def enqueue(self, node_id: str) -> bool:
        """Append a node to the worklist unless it is already queued."""
        if node_id in self.worklist:
            return False
        self.worklist.append(node_id)
        return True

    def increment_runs(self, node_id: str) -> int:
        self.run_counts[node_id] = self.run_counts.get(node_id, 0) + 1
        return self.run_counts[node_id]

    def mark_completed(self, node_id: str) -> None:
        self.set_status(node_id, NodeStatus.COMPLETED)
        if node_id not in self.completed_nodes:
            self.completed_nodes.append(node_id)

    def mark_failed(self, node_id: str, error: str) -> None:
        self.set_status(node_id, NodeStatus.FAILED)
        if node_id not in self.failed_nodes:
            self.failed_nodes.append(node_id)
        self.errors.append({
            "node_id": node_id,
            "error": error,
            "timestamp": datetime.utcnow().isoformat(),
        })

    def reset_nodes(self, node_ids: Iterable[str]) -> None:
        """Return nodes to pending (next loop iteration)."""
        for node_id in node_ids:
            self.node_status[node_id] = NodeStatus.PENDING
            if node_id in self.completed_nodes:
                self.completed_nodes.remove(node_id)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        return cls.model_validate(data)
