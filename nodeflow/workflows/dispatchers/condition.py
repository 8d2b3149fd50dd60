"""
Conditional Branch Dispatcher

Evaluates an if/else node and names the branch handle that must not fire.

Two condition formats are supported:
- ``condition``: an expression evaluated with simpleeval against the
  node's input scope, e.g. ``score >= 0.8 and status == "ok"``
- ``conditions``: structured clauses
  ``[{"field": "result.status", "operator": "==", "value": "ok"}]``
  combined with ``logic`` ("and" / "or")
"""

import logging
from typing import Any, Dict, List

from simpleeval import EvalWithCompoundTypes

from ..nodes import ConditionClause, IfElseConfig, Node, NodeType
from ..outcome import Error, NodeOutcome, Success
from ..template import build_scope, get_nested_value, routed_inputs
from .base import NodeDispatcher

logger = logging.getLogger(__name__)


THEN_HANDLE = "then"
ELSE_HANDLE = "else"

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
}

LITERAL_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
}


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Compare values using operator."""
    if operator == "==":
        return actual == expected
    elif operator == "!=":
        return actual != expected
    elif operator == "<":
        return actual < expected
    elif operator == ">":
        return actual > expected
    elif operator == "<=":
        return actual <= expected
    elif operator == ">=":
        return actual >= expected
    elif operator == "in":
        return actual in expected
    elif operator == "not_in":
        return actual not in expected
    elif operator == "contains":
        return expected in actual
    elif operator == "is_none":
        return actual is None
    elif operator == "is_not_none":
        return actual is not None
    elif operator == "is_true":
        return bool(actual)
    elif operator == "is_false":
        return not bool(actual)
    raise ValueError(f"Unknown operator: {operator}")


def evaluate_expression(expression: str, scope: Dict[str, Any]) -> bool:
    """
    Evaluate a boolean expression against a variable scope.

    Raises:
        Exception: Any simpleeval error (undefined name, forbidden construct)
    """
    names = dict(LITERAL_NAMES)
    names.update(scope)
    evaluator = EvalWithCompoundTypes(names=names, functions=SAFE_FUNCTIONS)
    return bool(evaluator.eval(expression))


def evaluate_clauses(clauses: List[ConditionClause], logic: str, scope: Dict[str, Any]) -> bool:
    """Evaluate structured clauses with and/or logic."""
    results = (
        compare(get_nested_value(scope, clause.field), clause.operator, clause.value)
        for clause in clauses
    )
    if logic == "or":
        return any(results)
    return all(results)


class IfElseDispatcher(NodeDispatcher):
    """Dispatcher for ``ifElseNode``."""

    node_type = NodeType.IF_ELSE.value
    config_model = IfElseConfig

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: IfElseConfig = node.config
        expression = config.condition.strip()

        if not expression and not config.conditions:
            return Error(message="Condition is empty")

        scope = build_scope(inputs)
        try:
            if expression:
                result = evaluate_expression(expression, scope)
            else:
                result = evaluate_clauses(config.conditions, config.logic, scope)
        except Exception as e:
            logger.warning(f"Condition evaluation failed for node {node.id}: {e}")
            return Error(message=f"Condition evaluation failed: {e}")

        branch = THEN_HANDLE if result else ELSE_HANDLE
        skipped = ELSE_HANDLE if result else THEN_HANDLE

        logger.info(f"Condition {node.id} evaluated to {result}, taking '{branch}' branch")

        return Success(
            outputs={
                "conditionResult": result,
                "condition": expression or [c.model_dump() for c in config.conditions],
                branch: routed_inputs(inputs),
            },
            metadata={"branch": branch},
            skipped_handles=[skipped],
        )
