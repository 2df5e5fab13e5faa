"""
Condition evaluator for ``condition`` nodes.

Compares a session variable against an authored value. Evaluation never
raises: a missing variable reads as the empty string, and a numeric
comparison whose operands do not parse is false.

Supports nested dot-notation variable access (``order.status``).
"""
from __future__ import annotations

import json
import math
from typing import Any, Callable, Optional

from models.schemas import ConditionOperator


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    if field in data:
        return data[field]
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def to_text(value: Any) -> str:
    """String form used for comparisons and template rendering."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = to_text(value).strip()
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    return None if math.isnan(num) else num


def _numeric(cmp: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        a, b = to_number(actual), to_number(expected)
        if a is None or b is None:
            return False
        return cmp(a, b)
    return compare


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS.value: lambda a, b: to_text(a) == to_text(b),
    ConditionOperator.NOT_EQUALS.value: lambda a, b: to_text(a) != to_text(b),
    ConditionOperator.CONTAINS.value: lambda a, b: to_text(b) in to_text(a),
    ConditionOperator.GREATER_THAN.value: _numeric(lambda a, b: a > b),
    ConditionOperator.LESS_THAN.value: _numeric(lambda a, b: a < b),
}


def evaluate_condition(variable: str, operator: Any, value: Any, variables: dict[str, Any]) -> bool:
    """Evaluate ``variables[variable] <operator> value``."""
    actual = get_nested_value(variables, variable) if variable else None
    if actual is None:
        actual = ""
    key = operator.value if isinstance(operator, ConditionOperator) else str(operator)
    fn = OPERATORS.get(key)
    if fn is None:
        return False
    return fn(actual, value)
