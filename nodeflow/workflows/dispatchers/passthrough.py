"""
Pass-through Dispatchers

Nodes that move values along the graph without transforming them:
workflow start, plugin output, empty node, and the answer node that
streams its text to the caller.
"""

import logging
from typing import Any, Dict

from nodeflow.services.streaming import emit_chunk
from ..nodes import AnswerConfig, Node, NodeType
from ..outcome import NodeOutcome, Success
from ..template import build_scope, render_text, routed_inputs
from .base import NodeDispatcher

logger = logging.getLogger(__name__)


class WorkflowStartDispatcher(NodeDispatcher):
    """Entry node: exposes the run's input variables as outputs."""

    node_type = NodeType.WORKFLOW_START.value

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        return Success(outputs=routed_inputs(inputs))


class PassThroughDispatcher(NodeDispatcher):
    """Echoes every routed handle value unchanged."""

    def __init__(self, node_type: str = NodeType.EMPTY.value):
        self.node_type = node_type

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        return Success(outputs=routed_inputs(inputs))


class AnswerDispatcher(NodeDispatcher):
    """
    Renders the answer text and streams it to the caller.

    The ``text`` config is interpolated against the input scope; without
    it, the routed ``answerText`` value is used as-is.
    """

    node_type = NodeType.ANSWER.value
    config_model = AnswerConfig

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: AnswerConfig = node.config
        scope = build_scope(inputs)

        if config.text:
            text = render_text(config.text, scope)
        else:
            value = inputs.get("answerText", "")
            text = value if isinstance(value, str) else render_text("{{answerText}}", inputs)

        if text:
            await emit_chunk(text)

        logger.debug(f"Answer node {node.id} produced {len(text)} characters")
        return Success(outputs={"answerText": text})
