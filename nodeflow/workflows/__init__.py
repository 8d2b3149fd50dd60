"""
nodeflow Workflow System

Components:
- Nodes: typed node definitions and their configuration models
- Graph: workflow definition with handle-named edges and validation
- State: run context (variables, node outputs, scopes) and scheduler state
- Outcomes: Success / Error / Suspended results of a node dispatch
- Dispatchers: one executor per built-in node type, looked up by registry
- Interactions: checkpoints of runs paused for a human response
"""

from .nodes import (
    NodeType,
    NodeStatus,
    NodeConfig,
    Node,
    parse_node_config,
)
from .outcome import (
    OutcomeStatus,
    InteractionKind,
    InteractionRequest,
    Success,
    Error,
    Suspended,
    NodeOutcome,
)
from .state import (
    EdgeStatus,
    ExecutionContext,
    LoopFrame,
    NodeMetrics,
    RunState,
    is_system_key,
)
from .template import render, render_text, get_nested_value
from .graph import Edge, Workflow, build_linear_workflow
from .interactions import (
    InteractionState,
    InteractionStorageBackend,
    InMemoryInteractionBackend,
    RedisInteractionBackend,
    InteractionStore,
    get_interaction_store,
    interaction_store_from_settings,
    create_interaction_store,
)
from .registry import DispatcherRegistry, create_default_registry

__all__ = [
    # Nodes
    "NodeType",
    "NodeStatus",
    "NodeConfig",
    "Node",
    "parse_node_config",
    # Outcomes
    "OutcomeStatus",
    "InteractionKind",
    "InteractionRequest",
    "Success",
    "Error",
    "Suspended",
    "NodeOutcome",
    # State
    "EdgeStatus",
    "ExecutionContext",
    "LoopFrame",
    "NodeMetrics",
    "RunState",
    "is_system_key",
    # Templates
    "render",
    "render_text",
    "get_nested_value",
    # Graph
    "Edge",
    "Workflow",
    "build_linear_workflow",
    # Interactions
    "InteractionState",
    "InteractionStorageBackend",
    "InMemoryInteractionBackend",
    "RedisInteractionBackend",
    "InteractionStore",
    "get_interaction_store",
    "interaction_store_from_settings",
    "create_interaction_store",
    # Dispatch
    "DispatcherRegistry",
    "create_default_registry",
]
