"""Data transform task.

Config:
    input: array to transform (usually a "{{steps.<id>...}}" placeholder)
    transformation:
        {"type": "map", "mapping": {"target": "source.path", "constant": 1}}
        {"type": "filter", "condition": {"field": "age", "operator": "greater_than", "value": 10}}
        {"type": "aggregate", "operation": {"type": "sum", "field": "amount"}}
        {"type": "sort", "field": "created_at", "order": "desc"}
        {"type": "group", "groupBy": "status"}
        {"type": "flatten"}
        {"type": "unique", "field": "email"}
"""

import json
from functools import cmp_to_key
from typing import Any, Callable, Dict, Optional

from core.exceptions import InvalidConfiguration, TypeMismatch
from tasks.base_task import BaseTask, TaskResult
from workflow.operators import apply_operator
from workflow.templating import get_path


def _value(item: Any, path: Optional[str]) -> Any:
    if not path:
        return item
    return get_path(item, path, default=None)


def _require_list(data: Any, operation: str) -> list:
    if not isinstance(data, list):
        raise TypeMismatch(f"{operation.capitalize()} transformation requires array input")
    return data


def _hashable(value: Any) -> Any:
    try:
        hash(value)
        return (type(value).__name__, value)
    except TypeError:
        return json.dumps(value, sort_keys=True, default=str)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def transform_map(data: Any, mapping: Dict[str, Any]) -> list:
    records = _require_list(data, "map")
    if not isinstance(mapping, dict):
        raise InvalidConfiguration("map transformation requires a 'mapping' object")
    return [
        {
            target: _value(item, source) if isinstance(source, str) else source
            for target, source in mapping.items()
        }
        for item in records
    ]


def transform_filter(data: Any, condition: Dict[str, Any]) -> list:
    records = _require_list(data, "filter")
    if not isinstance(condition, dict) or "field" not in condition:
        raise InvalidConfiguration("filter transformation requires a 'condition' with a 'field'")
    field, operator, value = condition["field"], condition.get("operator", "equals"), condition.get("value")
    # Unknown operators keep every record
    return [item for item in records if apply_operator(operator, _value(item, field), value, unknown=True)]


def transform_aggregate(data: Any, operation: Dict[str, Any]) -> Dict[str, Any]:
    records = _require_list(data, "aggregate")
    kind = (operation or {}).get("type")
    field = (operation or {}).get("field")
    values = [_value(item, field) for item in records]

    if kind == "count":
        return {"count": len(records)}
    if kind == "sum":
        return {"sum": sum(_as_number(v) or 0 for v in values)}
    if kind == "average":
        total = sum(_as_number(v) or 0 for v in values)
        return {"average": total / len(values) if values else 0}
    if kind in ("max", "min"):
        numbers = [n for n in (_as_number(v) for v in values) if n is not None]
        if not numbers:
            return {kind: None}
        return {kind: max(numbers) if kind == "max" else min(numbers)}
    if kind == "distinct":
        seen, distinct = set(), []
        for v in values:
            key = _hashable(v)
            if key not in seen:
                seen.add(key)
                distinct.append(v)
        return {"distinct": distinct, "count": len(distinct)}
    raise InvalidConfiguration(f"Unknown aggregation type: {kind}")


def _compare(a: Any, b: Any) -> int:
    if a == b:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    try:
        return -1 if a < b else 1
    except TypeError:
        return -1 if str(a) < str(b) else 1


def transform_sort(data: Any, field: Optional[str], order: str = "asc") -> list:
    records = _require_list(data, "sort")
    if order not in ("asc", "desc"):
        raise InvalidConfiguration(f"Sort order must be 'asc' or 'desc', got '{order}'")
    key = cmp_to_key(lambda a, b: _compare(_value(a, field), _value(b, field)))
    # sorted() is stable in both directions
    return sorted(records, key=key, reverse=order == "desc")


def _group_key(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(value, default=str) if isinstance(value, (dict, list)) else str(value)


def transform_group(data: Any, group_by: str) -> Dict[str, Any]:
    records = _require_list(data, "group")
    if not group_by:
        raise InvalidConfiguration("group transformation requires 'groupBy'")
    groups: Dict[str, list] = {}
    for item in records:
        groups.setdefault(_group_key(_value(item, group_by)), []).append(item)
    return {"groups": groups, "groupCount": len(groups), "groupBy": group_by}


def transform_flatten(data: Any) -> list:
    records = _require_list(data, "flatten")
    flat: list = []
    for item in records:
        if isinstance(item, list):
            flat.extend(transform_flatten(item))
        else:
            flat.append(item)
    return flat


def transform_unique(data: Any, field: Optional[str] = None) -> list:
    records = _require_list(data, "unique")
    seen, unique = set(), []
    for item in records:
        key = _hashable(_value(item, field))
        if key not in seen:
            seen.add(key)
            unique.append(item)
    return unique


TRANSFORMS: Dict[str, Callable[[Any, Dict[str, Any]], Any]] = {
    "map": lambda data, t: transform_map(data, t.get("mapping")),
    "filter": lambda data, t: transform_filter(data, t.get("condition")),
    "aggregate": lambda data, t: transform_aggregate(data, t.get("operation")),
    "sort": lambda data, t: transform_sort(data, t.get("field"), t.get("order", "asc")),
    "group": lambda data, t: transform_group(data, t.get("groupBy") or t.get("group_by")),
    "flatten": lambda data, t: transform_flatten(data),
    "unique": lambda data, t: transform_unique(data, t.get("field")),
}


def apply_transformation(data: Any, transformation: Dict[str, Any]) -> Any:
    if not isinstance(transformation, dict) or not transformation.get("type"):
        raise InvalidConfiguration("Transformation configuration is required")
    handler = TRANSFORMS.get(transformation["type"])
    if handler is None:
        raise InvalidConfiguration(f"Unknown transformation type: {transformation['type']}")
    return handler(data, transformation)


class TransformTask(BaseTask):
    """Reshape arrays of records between steps."""

    task_type = "transform"
    display_name = "Transform Data"
    description = "Map, filter, aggregate, sort, group, flatten or de-duplicate records"

    async def execute(self, config: Dict[str, Any], context=None) -> TaskResult:
        output = apply_transformation(config.get("input"), config.get("transformation"))
        return TaskResult(output=output, metadata={"transformation": config["transformation"]["type"]})

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["input", "transformation"],
            "properties": {
                "input": {"description": "Array to transform"},
                "transformation": {
                    "type": "object",
                    "properties": {
                        "type": {"type": "string", "enum": sorted(TRANSFORMS)},
                    },
                },
            },
        }
