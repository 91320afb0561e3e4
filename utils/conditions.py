"""
Condition evaluator for branch predicates.

Evaluates (variable, operator, value) predicates against the variable store.
Supports dotted path access with numeric array indices and operator aliases.
"""
from __future__ import annotations

from typing import Any, Optional


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _numeric(fn):
    def compare(a: Any, b: Any) -> bool:
        left, right = _as_number(a), _as_number(b)
        if left is None or right is None:
            return False
        return fn(left, right)
    return compare


OPERATORS: dict[str, Any] = {
    "eq": lambda a, b: _stringify(a) == _stringify(b),
    "neq": lambda a, b: _stringify(a) != _stringify(b),
    "contains": lambda a, b: _stringify(b).lower() in _stringify(a).lower(),
    "not_contains": lambda a, b: _stringify(b).lower() not in _stringify(a).lower(),
    "gt": _numeric(lambda a, b: a > b),
    "lt": _numeric(lambda a, b: a < b),
    "gte": _numeric(lambda a, b: a >= b),
    "lte": _numeric(lambda a, b: a <= b),
    "exists": lambda a, b: a is not None and a != "",
    "not_exists": lambda a, b: a is None or a == "",
}

ALIASES: dict[str, str] = {
    "==": "eq", "equals": "eq",
    "!=": "neq", "not_equals": "neq",
    ">": "gt", "greater": "gt",
    "<": "lt", "less": "lt",
    ">=": "gte", "greater_or_equal": "gte",
    "<=": "lte", "less_or_equal": "lte",
}


def canonical_operator(name: str) -> str:
    key = (name or "").strip()
    return ALIASES.get(key, ALIASES.get(key.lower(), key.lower()))


def get_nested_value(data: Any, field: str) -> Any:
    """Get a value using dot notation. e.g. 'order.items.0.name'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            idx = int(part)
            current = current[idx] if -len(current) <= idx < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def evaluate_predicate(variable: str, operator: str, value: Any, data: dict[str, Any]) -> bool:
    """Evaluate a single predicate; unknown operators are false."""
    fn = OPERATORS.get(canonical_operator(operator))
    if fn is None:
        return False
    left = get_nested_value(data, variable) if variable else None
    try:
        return bool(fn(left, value))
    except (TypeError, ValueError):
        return False
