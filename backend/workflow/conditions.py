"""Conditional evaluator.

Evaluates branch conditions against a run's variable bag. Supported forms:

- boolean literal: `true`
- string expression: `"{{trigger.amount}} > 100"`. Placeholders are
  substituted first (as JSON literals), then exactly one comparison out
  of `==`, `!=`, `>`, `<` is applied. Nothing is ever evaluated as code.
- structured predicate: `{"field": "trigger.status", "operator": "equals", "value": "paid"}`
- composition: `{"and": [...]}`, `{"or": [...]}`, `{"not": {...}}`
- composite forms via `evaluate_composite` (`type` is one of
  `if-then-else`, `switch-case`, `loop-while`, `loop-for`)

Results are cached per (configuration, variables) pair. The cache is
bounded, evicts oldest entries first, never stores failures and is safe
to share between concurrent runs.
"""

import copy
import hashlib
import json
import threading
from collections import OrderedDict
from typing import Any, Mapping, Optional

import structlog

from core.exceptions import ValidationError
from workflow.operators import apply_operator, strict_equals, OPERATORS
from workflow.templating import MISSING, get_path, interpolate, resolve_value

logger = structlog.get_logger(__name__)

_COMPARATORS = ("==", "!=", ">", "<")
_FORBIDDEN = ("===", "!==", ">=", "<=", "&&", "||")


def _parse_literal(text: str) -> Any:
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        pass
    if len(text) >= 2 and text[0] == text[-1] == "'":
        return text[1:-1]
    return text


def _split_comparison(expression: str) -> Optional[tuple[str, str, str]]:
    """Find the single top-level comparator outside quoted strings."""
    quote: Optional[str] = None
    i = 0
    found: Optional[tuple[int, str]] = None
    while i < len(expression):
        ch = expression[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        else:
            for bad in _FORBIDDEN:
                if expression.startswith(bad, i):
                    raise ValidationError(f"Unsupported operator '{bad}' in condition: {expression}")
            for op in _COMPARATORS:
                if expression.startswith(op, i):
                    if found is not None:
                        raise ValidationError(f"Only one comparison is allowed: {expression}")
                    found = (i, op)
                    i += len(op) - 1
                    break
        i += 1
    if found is None:
        return None
    index, op = found
    return expression[:index], op, expression[index + len(op):]


class ConditionalEvaluator:
    """Evaluates conditions with an idempotent, bounded result cache."""

    def __init__(self, cache_size: int = 1000, loop_max_iterations: int = 100):
        self.cache_size = cache_size
        self.loop_max_iterations = loop_max_iterations
        self._cache: OrderedDict[str, Any] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evaluations = 0

    # ─── Public API ────────────────────────────────────────────

    def evaluate(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        """Evaluate a simple or logical condition to a boolean."""
        return self._cached(("predicate", condition), variables, lambda: self._predicate(condition, variables))

    def evaluate_composite(self, config: Mapping[str, Any], variables: Mapping[str, Any]) -> dict:
        """Evaluate a composite form and return its structured result."""
        kind = config.get("type", "if-then-else")
        handlers = {
            "if-then-else": self._if_then_else,
            "switch-case": self._switch_case,
            "loop-while": self._loop_while,
            "loop-for": self._loop_for,
        }
        handler = handlers.get(kind)
        if handler is None:
            raise ValidationError(f"Unknown composite condition type: {kind}")
        result = self._cached(("composite", config), variables, lambda: handler(config, variables))
        return copy.deepcopy(result)

    def get_cache_stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "size": len(self._cache),
                "max_size": self.cache_size,
                "hit_rate": round(self.hits / total, 4) if total else 0.0,
                "evaluations": self.evaluations,
            }

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0

    # ─── Cache ─────────────────────────────────────────────────

    @staticmethod
    def cache_key(config: Any, variables: Mapping[str, Any]) -> str:
        payload = json.dumps({"config": config, "variables": variables}, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()

    def _cached(self, config: Any, variables: Mapping[str, Any], compute) -> Any:
        key = self.cache_key(config, variables)
        with self._lock:
            if key in self._cache:
                self.hits += 1
                return self._cache[key]
            self.misses += 1

        # Computed outside the lock; failures propagate and are not cached
        result = compute()

        with self._lock:
            self._cache[key] = result
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return result

    # ─── Predicates ────────────────────────────────────────────

    def _predicate(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        with self._lock:
            self.evaluations += 1
        return self._eval(condition, variables)

    def _eval(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, str):
            return self._eval_expression(condition, variables)
        if isinstance(condition, Mapping):
            if "and" in condition:
                return all(self._eval(c, variables) for c in self._as_list(condition["and"], "and"))
            if "or" in condition:
                return any(self._eval(c, variables) for c in self._as_list(condition["or"], "or"))
            if "not" in condition:
                return not self._eval(condition["not"], variables)
            if "field" in condition:
                return self._eval_structured(condition, variables)
            if "type" in condition:
                raise ValidationError(
                    f"Composite condition '{condition['type']}' must be evaluated with evaluate_composite"
                )
        raise ValidationError(f"Unsupported condition: {condition!r}")

    @staticmethod
    def _as_list(value: Any, name: str) -> list:
        if not isinstance(value, list):
            raise ValidationError(f"'{name}' expects a list of conditions")
        return value

    @staticmethod
    def _eval_structured(condition: Mapping[str, Any], variables: Mapping[str, Any]) -> bool:
        field_value = get_path(variables, str(condition["field"]), default=None)
        operator = condition.get("operator", "equals")
        value = resolve_value(condition.get("value"), variables)
        if operator not in OPERATORS:
            logger.warning("Unknown condition operator", operator=operator)
        return apply_operator(operator, field_value, value, unknown=False)

    @staticmethod
    def _eval_expression(expression: str, variables: Mapping[str, Any]) -> bool:
        resolved = interpolate(expression, variables, as_json=True, missing="null")
        parts = _split_comparison(resolved)
        if parts is None:
            return bool(_parse_literal(resolved))

        left, op, right = parts
        a, b = _parse_literal(left), _parse_literal(right)
        if op == "==":
            return strict_equals(a, b)
        if op == "!=":
            return not strict_equals(a, b)
        return apply_operator(op, a, b)

    # ─── Composite forms ───────────────────────────────────────

    def _if_then_else(self, config: Mapping[str, Any], variables: Mapping[str, Any]) -> dict:
        met = self._predicate(config.get("condition", False), variables)
        return {
            "type": "if-then-else",
            "condition_met": met,
            "branch": "then" if met else "else",
            "next": list(config.get("then" if met else "else", []) or []),
        }

    def _switch_case(self, config: Mapping[str, Any], variables: Mapping[str, Any]) -> dict:
        if "field" not in config:
            raise ValidationError("switch-case requires 'field'")
        field_value = get_path(variables, str(config["field"]), default=None)
        for index, case in enumerate(config.get("cases", []) or []):
            if strict_equals(case.get("value"), field_value):
                return {
                    "type": "switch-case",
                    "matched_case": index,
                    "value": field_value,
                    "next": list(case.get("next", []) or []),
                }
        return {
            "type": "switch-case",
            "matched_case": "default",
            "value": field_value,
            "next": list(config.get("default", []) or []),
        }

    def _loop_while(self, config: Mapping[str, Any], variables: Mapping[str, Any]) -> dict:
        """Count iterations while the condition holds.

        Each check sees the caller's variables plus `iteration` (0-based).
        """
        condition = config.get("condition", False)
        limit = int(config.get("max_iterations", self.loop_max_iterations))
        iteration = 0
        while iteration < limit and self._predicate(condition, {**variables, "iteration": iteration}):
            iteration += 1
        return {
            "type": "loop-while",
            "total_iterations": iteration,
            "stopped": "max_iterations" if iteration >= limit else "condition_false",
        }

    def _loop_for(self, config: Mapping[str, Any], variables: Mapping[str, Any]) -> dict:
        """Select items of an explicit array, optionally filtered per item.

        The filter condition sees `item` and `index`.
        """
        items = resolve_value(config.get("items", []), variables)
        if isinstance(items, str):
            items = get_path(variables, items, default=MISSING)
        if not isinstance(items, list):
            raise ValidationError("loop-for requires 'items' to be an array")
        limit = int(config.get("max_iterations", self.loop_max_iterations))
        if len(items) > limit:
            raise ValidationError(f"loop-for has {len(items)} items, exceeding max_iterations={limit}")

        condition = config.get("condition")
        selected = [
            item for index, item in enumerate(items)
            if condition is None
            or self._predicate(condition, {**variables, "item": item, "index": index})
        ]
        return {
            "type": "loop-for",
            "total_iterations": len(items),
            "items": selected,
        }
