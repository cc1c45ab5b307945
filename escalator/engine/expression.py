"""Condition expressions over item snapshots.

Conditions are Python-like expressions run by simpleeval with a fixed set of
helpers, e.g. ``priority == 'URGENT' and 'vip' in tags`` or
``hours_until(due_date) < 12``.
"""

import ast
from datetime import datetime
from typing import Any

from pydantic import TypeAdapter, ValidationError
from simpleeval import EvalWithCompoundTypes

from escalator.core.clock import hours_between, utcnow
from escalator.core.logging import get_logger

logger = get_logger(__name__)

_DATETIME = TypeAdapter(datetime)


def _hours_until(value: Any) -> float:
    """Hours from now until a timestamp (negative once it has passed)."""
    try:
        moment = _DATETIME.validate_python(value)
    except ValidationError as e:
        raise ValueError(f"not a timestamp: {value!r}") from e
    return hours_between(utcnow(), moment)


def _hours_since(value: Any) -> float:
    return -_hours_until(value)


class ConditionEvaluator:
    """Safe evaluator for trigger conditions."""

    FUNCTIONS = {
        "abs": abs,
        "min": min,
        "max": max,
        "len": len,
        "round": round,
        "lower": lambda s: str(s).lower(),
        "upper": lambda s: str(s).upper(),
        "hours_until": _hours_until,
        "hours_since": _hours_since,
    }

    def evaluate(self, expression: str, context: dict[str, Any]) -> bool:
        """Evaluate a condition against an item snapshot.

        Unset optional fields are visible as None, so ``due_date is None``
        works for undated items.

        Raises:
            ValueError: If the expression fails or references an unknown name
        """
        evaluator = EvalWithCompoundTypes(names=dict(context), functions=self.FUNCTIONS)
        try:
            return bool(evaluator.eval(expression))
        except Exception as e:
            logger.warning("Condition evaluation error", expression=expression, error=str(e))
            raise ValueError(f"Invalid condition: {expression}") from e

    def validate(self, expression: str) -> tuple[bool, str | None]:
        """Check a condition's syntax and called functions without evaluating it."""
        if not expression.strip():
            return False, "Expression is empty"
        try:
            tree = ast.parse(expression, mode="eval")
        except SyntaxError as e:
            return False, f"Syntax error: {e.msg}"

        for node in ast.walk(tree):
            if isinstance(node, ast.Call):
                name = node.func.id if isinstance(node.func, ast.Name) else None
                if name not in self.FUNCTIONS:
                    return False, f"Unknown function: {name or ast.unparse(node.func)}"
        return True, None


_evaluator: ConditionEvaluator | None = None


def get_expression_evaluator() -> ConditionEvaluator:
    """Get condition evaluator singleton."""
    global _evaluator
    if _evaluator is None:
        _evaluator = ConditionEvaluator()
    return _evaluator


def evaluate_expression(expression: str, context: dict[str, Any]) -> bool:
    return get_expression_evaluator().evaluate(expression, context)
