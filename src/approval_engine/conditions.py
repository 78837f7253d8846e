"""Condition evaluation for step gating, auto-approval and escalation rules.

Conditions are folded left to right: the first condition seeds the result
and every following condition joins it with its own ``logical_operator``.
There is no precedence grouping, so ``a or b and c`` reads as
``(a or b) and c``.
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from .config import ConditionOperator, LogicalOperator
from .models import Condition

logger = logging.getLogger(__name__)

_MISSING = object()


def lookup_field(data: Mapping[str, Any], path: str) -> Any:
    """Read ``path`` from ``data``; dotted paths walk nested mappings."""
    if path in data:
        return data[path]
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def compare(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Apply a single operator. Incomparable operands yield False."""
    if actual is _MISSING:
        # Only the negative membership/equality checks hold for absent fields
        return operator in (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_IN)

    try:
        if operator == ConditionOperator.EQUALS:
            return actual == expected
        if operator == ConditionOperator.NOT_EQUALS:
            return actual != expected
        if operator == ConditionOperator.GREATER_THAN:
            return actual > expected
        if operator == ConditionOperator.LESS_THAN:
            return actual < expected
        if operator == ConditionOperator.CONTAINS:
            if actual is None:
                return False
            return expected in actual
        if operator == ConditionOperator.IN:
            return actual in expected
        if operator == ConditionOperator.NOT_IN:
            return actual not in expected
    except TypeError:
        logger.debug(
            "Incomparable operands for %s: %r vs %r", operator.value, actual, expected
        )
        return False

    raise ValueError(f"Unsupported operator: {operator}")


class ConditionEvaluator:
    """Stateless evaluator shared by every engine worker."""

    def evaluate_one(self, condition: Condition, request_data: Mapping[str, Any]) -> bool:
        actual = lookup_field(request_data, condition.field)
        return compare(actual, ConditionOperator(condition.operator), condition.value)

    def evaluate(
        self,
        conditions: Iterable[Condition],
        request_data: Optional[Mapping[str, Any]],
    ) -> bool:
        """Evaluate ``conditions`` against ``request_data``.

        An empty condition list is satisfied.
        """
        data = request_data or {}
        result: Optional[bool] = None
        for condition in conditions:
            outcome = self.evaluate_one(condition, data)
            if result is None:
                result = outcome
            elif LogicalOperator(condition.logical_operator) == LogicalOperator.OR:
                result = result or outcome
            else:
                result = result and outcome
        return True if result is None else result
