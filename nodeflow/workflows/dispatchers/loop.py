"""
Loop Dispatchers

A loop is a loopStart/loopEnd pair. The dispatchers only decide whether
another iteration should run; iteration counters belong to the executor,
which passes them to loopEnd as reserved ``__loop_*`` inputs and rewinds
the loop body between iterations.
"""

import logging
from typing import Any, Dict, List, Optional

from ..nodes import LoopEndConfig, LoopStartConfig, Node, NodeType
from ..outcome import Error, NodeOutcome, Success
from ..template import build_scope, get_nested_value
from .base import NodeDispatcher
from .condition import evaluate_expression

logger = logging.getLogger(__name__)


FOR_EACH = "forEach"
WHILE = "while"

# Reserved inputs the executor hands to loopEnd
LOOP_ITERATION = "__loop_iteration"
LOOP_INDEX = "__loop_index"
LOOP_TOTAL = "__loop_total"
LOOP_MAX_ITERATIONS = "__loop_max_iterations"
LOOP_TYPE = "__loop_type"
LOOP_CONDITION = "__loop_condition"

RESULT_HANDLE = "result"


def loop_item_outputs(
    loop_type: str,
    loop_variable: str,
    items: List[Any],
    index: int,
    iteration: int,
    max_iterations: int,
    should_continue: bool,
) -> Dict[str, Any]:
    """Outputs of a loopStart node for one iteration."""
    if loop_type == FOR_EACH:
        item = items[index] if index < len(items) else None
    else:
        item = index

    return {
        loop_variable: item,
        "item": item,
        "currentIndex": index,
        "currentIteration": iteration,
        "totalItems": len(items),
        "maxIterations": max_iterations,
        "loopType": loop_type,
        "shouldContinue": should_continue,
    }


class LoopStartDispatcher(NodeDispatcher):
    """Dispatcher for ``loopStart``."""

    node_type = NodeType.LOOP_START.value
    config_model = LoopStartConfig

    def __init__(self, default_max_iterations: int = 100):
        self.default_max_iterations = default_max_iterations

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: LoopStartConfig = node.config
        max_iterations = config.max_iterations or self.default_max_iterations
        scope = build_scope(inputs)

        if config.loop_type == FOR_EACH:
            items = self._resolve_items(config.list_key, inputs, scope)
            if items is None:
                return Error(message=f"Loop input '{config.list_key}' is not a list")
            should_continue = len(items) > 0
        else:
            items = []
            if not config.condition:
                return Error(message="While loop requires a condition")
            try:
                should_continue = evaluate_expression(config.condition, scope)
            except Exception as e:
                return Error(message=f"Loop condition evaluation failed: {e}")

        logger.info(
            f"Loop {node.id} starting: type={config.loop_type}, "
            f"items={len(items)}, max_iterations={max_iterations}"
        )

        return Success(
            outputs=loop_item_outputs(
                config.loop_type,
                config.loop_variable,
                items,
                index=0,
                iteration=1,
                max_iterations=max_iterations,
                should_continue=should_continue,
            ),
            metadata={"items": items, "max_iterations": max_iterations},
        )

    @staticmethod
    def _resolve_items(
        list_key: str,
        inputs: Dict[str, Any],
        scope: Dict[str, Any],
    ) -> Optional[List[Any]]:
        value = inputs.get(list_key)
        if value is None:
            value = get_nested_value(scope, list_key)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        return None


class LoopEndDispatcher(NodeDispatcher):
    """
    Dispatcher for ``loopEnd``.

    Reports ``shouldContinue`` from the frame the executor supplies:
    forEach continues while items remain, while continues while its
    condition holds. Both stop once ``maxIterations`` is reached.
    """

    node_type = NodeType.LOOP_END.value
    config_model = LoopEndConfig

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        if LOOP_ITERATION not in inputs:
            return Error(message=f"Loop end {node.id} has no active loop")

        iteration = int(inputs[LOOP_ITERATION])
        index = int(inputs.get(LOOP_INDEX, 0))
        total = int(inputs.get(LOOP_TOTAL, 0))
        max_iterations = int(inputs.get(LOOP_MAX_ITERATIONS, iteration))
        loop_type = inputs.get(LOOP_TYPE, FOR_EACH)

        under_limit = iteration < max_iterations

        if loop_type == FOR_EACH:
            should_continue = index + 1 < total and under_limit
        else:
            condition = inputs.get(LOOP_CONDITION) or ""
            try:
                holds = bool(condition) and evaluate_expression(condition, build_scope(inputs))
            except Exception as e:
                return Error(message=f"Loop condition evaluation failed: {e}")
            should_continue = holds and under_limit

        if not under_limit:
            logger.info(f"Loop end {node.id} reached max iterations ({max_iterations})")

        return Success(
            outputs={
                "shouldContinue": should_continue,
                "currentIteration": iteration,
                "currentIndex": index,
                RESULT_HANDLE: inputs.get(RESULT_HANDLE),
                "loopCompleted": False,
            },
            metadata={"iteration": iteration, "max_iterations": max_iterations},
        )
