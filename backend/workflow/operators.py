"""Comparison operators shared by structured conditions and the filter transform."""

from typing import Any, Callable, Optional


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without Python's bool/int coercion (True != 1)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _op(left: Any, right: Any) -> bool:
        a, b = _number(left), _number(right)
        if a is None or b is None:
            return False
        return compare(a, b)
    return _op


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return str(right) in left
    if isinstance(left, (list, tuple)):
        return any(strict_equals(item, right) for item in left)
    return False


def _in(left: Any, right: Any) -> bool:
    return isinstance(right, (list, tuple)) and any(strict_equals(left, item) for item in right)


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": strict_equals,
    "not_equals": lambda a, b: not strict_equals(a, b),
    "contains": _contains,
    "greater_than": _numeric(lambda a, b: a > b),
    "less_than": _numeric(lambda a, b: a < b),
    "greater_than_or_equal": _numeric(lambda a, b: a >= b),
    "less_than_or_equal": _numeric(lambda a, b: a <= b),
    "starts_with": lambda a, b: isinstance(a, str) and a.startswith(str(b)),
    "ends_with": lambda a, b: isinstance(a, str) and a.endswith(str(b)),
    "exists": lambda a, _b: a is not None,
    "in": _in,
    "not_in": lambda a, b: isinstance(b, (list, tuple)) and not _in(a, b),
}

# Symbolic spellings accepted in structured conditions
OPERATORS.update({
    "==": OPERATORS["equals"],
    "!=": OPERATORS["not_equals"],
    ">": OPERATORS["greater_than"],
    "<": OPERATORS["less_than"],
    ">=": OPERATORS["greater_than_or_equal"],
    "<=": OPERATORS["less_than_or_equal"],
})


def apply_operator(operator: str, field_value: Any, value: Any, unknown: bool = False) -> bool:
    """Apply `operator`; an unregistered operator yields `unknown`."""
    op = OPERATORS.get(operator)
    if op is None:
        return unknown
    return op(field_value, value)
