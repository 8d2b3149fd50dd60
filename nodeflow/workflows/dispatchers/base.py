"""
Dispatcher Contract

A dispatcher is the executable behaviour bound to a node type. It reads
its node's configuration and input slice and reports a NodeOutcome; it
never touches the run's context directly.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type

from ..nodes import Node, NodeConfig
from ..outcome import NodeOutcome


class NodeDispatcher(ABC):
    """
    Base class for node dispatchers.

    Subclasses set ``node_type`` (or assign it per instance when one class
    serves several node types) and implement ``dispatch``.
    """

    node_type: str = ""
    config_model: Optional[Type[NodeConfig]] = None

    @abstractmethod
    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        """
        Execute a node.

        Args:
            node: Node definition (typed config available as ``node.config``)
            inputs: Values routed along incoming edges, the reserved
                system keys, and the read-only variable scope

        Returns:
            Success, Error or Suspended
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(node_type={self.node_type!r})"
