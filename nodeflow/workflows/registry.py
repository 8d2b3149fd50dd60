"""
Node Dispatcher Registry

Maps node type strings to the dispatchers that execute them.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import httpx

from nodeflow.config import Settings, get_settings
from nodeflow.exceptions import DispatcherAlreadyRegisteredError, DispatchNotFoundError
from .dispatchers import (
    AnswerDispatcher,
    ChatDispatcher,
    ChatModelClient,
    CodeDispatcher,
    DatasetConcatDispatcher,
    DatasetRetriever,
    DatasetSearchDispatcher,
    DocumentSplitterDispatcher,
    HttpRequestDispatcher,
    IfElseDispatcher,
    InteractiveDispatcher,
    LoopEndDispatcher,
    LoopStartDispatcher,
    NodeDispatcher,
    PassThroughDispatcher,
    TextEditorDispatcher,
    VariableUpdateDispatcher,
    WorkflowStartDispatcher,
)
from .nodes import Node, NodeType
from .outcome import Error, InteractionKind, NodeOutcome, Success, error_from_exception


logger = logging.getLogger(__name__)


class DispatcherRegistry:
    """
    Registry for node dispatchers.

    Registration happens once at process start. Lookups are plain dict
    reads, so a single registry can serve many concurrent runs.
    """

    def __init__(self):
        """Initialize the dispatcher registry."""
        self._dispatchers: Dict[str, NodeDispatcher] = {}
        self._lock = threading.Lock()
        logger.info("DispatcherRegistry initialized")

    def register(
        self,
        node_type: str,
        dispatcher: NodeDispatcher,
        overwrite: bool = False
    ) -> None:
        """
        Register a dispatcher for a node type.

        Args:
            node_type: Node type string (exact match on dispatch)
            dispatcher: Dispatcher instance
            overwrite: If True, replace an existing dispatcher; otherwise raise error

        Raises:
            DispatcherAlreadyRegisteredError: If the type exists and overwrite is False
        """
        node_type = getattr(node_type, "value", node_type)

        with self._lock:
            if node_type in self._dispatchers and not overwrite:
                raise DispatcherAlreadyRegisteredError(node_type)
            self._dispatchers[node_type] = dispatcher

        logger.info(f"Registered dispatcher: {node_type} -> {dispatcher.__class__.__name__}")

    def register_dispatcher(self, dispatcher: NodeDispatcher, overwrite: bool = False) -> None:
        """Register a dispatcher under its own ``node_type``."""
        self.register(dispatcher.node_type, dispatcher, overwrite=overwrite)

    def unregister(self, node_type: str) -> bool:
        """
        Unregister a dispatcher.

        Returns:
            True if a dispatcher was removed, False if not found
        """
        node_type = getattr(node_type, "value", node_type)
        with self._lock:
            if node_type not in self._dispatchers:
                return False
            del self._dispatchers[node_type]

        logger.info(f"Unregistered dispatcher: {node_type}")
        return True

    def get(self, node_type: str) -> NodeDispatcher:
        """
        Get the dispatcher for a node type.

        Raises:
            DispatchNotFoundError: If no dispatcher is registered
        """
        node_type = getattr(node_type, "value", node_type)
        dispatcher = self._dispatchers.get(node_type)
        if dispatcher is None:
            raise DispatchNotFoundError(node_type)
        return dispatcher

    def get_safe(self, node_type: str) -> Optional[NodeDispatcher]:
        """Get a dispatcher, returning None if not found."""
        return self._dispatchers.get(getattr(node_type, "value", node_type))

    def has(self, node_type: str) -> bool:
        """Check if a node type has a dispatcher."""
        return getattr(node_type, "value", node_type) in self._dispatchers

    def list_types(self) -> List[str]:
        """List registered node types."""
        return list(self._dispatchers.keys())

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        """
        Dispatch a node to its registered dispatcher.

        Exceptions raised by the dispatcher become Error outcomes; a
        missing dispatcher is not caught.

        Raises:
            DispatchNotFoundError: If the node type has no dispatcher
        """
        dispatcher = self.get(node.type)
        started = time.perf_counter()

        try:
            outcome = await dispatcher.dispatch(node, inputs)
        except Exception as e:
            logger.error(f"Dispatcher {node.type} raised for node {node.id}: {e}", exc_info=True)
            outcome = error_from_exception(e, prefix="Execution error")

        if isinstance(outcome, (Success, Error)):
            outcome.metadata.setdefault(
                "execution_time_ms", round((time.perf_counter() - started) * 1000, 3)
            )
            outcome.metadata.setdefault("node_type", node.type)

        return outcome

    def clear(self) -> int:
        """
        Clear all registered dispatchers.

        Returns:
            Number of dispatchers cleared
        """
        with self._lock:
            count = len(self._dispatchers)
            self._dispatchers.clear()
        logger.info(f"Cleared {count} dispatchers from registry")
        return count

    def __len__(self) -> int:
        """Return the number of registered dispatchers."""
        return len(self._dispatchers)

    def __contains__(self, node_type: str) -> bool:
        """Check if a node type is registered."""
        return self.has(node_type)


def create_default_registry(
    chat_client: Optional[ChatModelClient] = None,
    retriever: Optional[DatasetRetriever] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
) -> DispatcherRegistry:
    """
    Create a registry with every built-in dispatcher.

    Content dispatchers are registered only when their collaborator is
    provided.

    Args:
        chat_client: Model provider for ``chatNode``
        retriever: Knowledge-base search for ``datasetSearchNode``
        http_client: Shared client for ``httpRequest468``
        settings: Limits for code and HTTP nodes (defaults to global settings)

    Returns:
        Populated DispatcherRegistry
    """
    settings = settings or get_settings()
    registry = DispatcherRegistry()

    dispatchers: List[NodeDispatcher] = [
        WorkflowStartDispatcher(),
        PassThroughDispatcher(NodeType.PLUGIN_OUTPUT.value),
        PassThroughDispatcher(NodeType.EMPTY.value),
        AnswerDispatcher(),
        IfElseDispatcher(),
        LoopStartDispatcher(default_max_iterations=settings.DEFAULT_LOOP_MAX_ITERATIONS),
        LoopEndDispatcher(),
        HttpRequestDispatcher(
            client=http_client,
            default_timeout_ms=settings.HTTP_REQUEST_TIMEOUT_MS,
            max_response_size=settings.HTTP_MAX_RESPONSE_SIZE,
        ),
        CodeDispatcher(
            default_timeout_ms=settings.CODE_EXECUTION_TIMEOUT_MS,
            memory_limit_mb=settings.CODE_MAX_MEMORY_MB,
            startup_timeout_ms=settings.CODE_STARTUP_TIMEOUT_MS,
        ),
        TextEditorDispatcher(),
        DocumentSplitterDispatcher(),
        VariableUpdateDispatcher(),
        DatasetConcatDispatcher(),
    ]
    dispatchers.extend(InteractiveDispatcher(kind) for kind in InteractionKind)

    if chat_client is not None:
        dispatchers.append(ChatDispatcher(chat_client))
    if retriever is not None:
        dispatchers.append(DatasetSearchDispatcher(retriever))

    for dispatcher in dispatchers:
        registry.register_dispatcher(dispatcher)

    return registry
