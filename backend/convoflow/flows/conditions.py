# /convoflow/flows/conditions.py

"""
Condition node evaluation.

`evaluate_condition` is pure: it reads the variable bag and never raises.
Unknown operators and non-numeric operands of numeric comparisons are False.
"""

import math
from typing import Any, Callable, Dict, Optional

from convoflow.flows.rendering import render_value

DEFAULT_OPERATOR = "equals"


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    if math.isnan(number):
        return None
    return number


def _equals(actual: Any, expected: str) -> bool:
    return actual is not None and render_value(actual) == expected


def _contains(actual: Any, expected: str) -> bool:
    if actual is None:
        return False
    return expected.lower() in render_value(actual).lower()


def _greater_than(actual: Any, expected: str) -> bool:
    left, right = _to_number(actual), _to_number(expected)
    return left is not None and right is not None and left > right


def _less_than(actual: Any, expected: str) -> bool:
    left, right = _to_number(actual), _to_number(expected)
    return left is not None and right is not None and left < right


OPERATORS: Dict[str, Callable[[Any, str], bool]] = {
    "equals": _equals,
    "contains": _contains,
    "greater_than": _greater_than,
    "less_than": _less_than,
}


def evaluate_condition(
    variables: Dict[str, Any],
    variable: Optional[str],
    operator: Optional[str],
    value: Optional[str],
) -> bool:
    """Evaluates `variables[variable] <operator> value`."""
    comparator = OPERATORS.get(operator or DEFAULT_OPERATOR)
    if comparator is None:
        return False
    return comparator(variables.get(variable or ""), value or "")
