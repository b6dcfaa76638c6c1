"""Template resolution for step configurations.

Strings may contain `{{path.to.variable}}` placeholders that are resolved
against an execution's variable bag before a step runs:

- A string consisting of exactly one placeholder resolves to the raw
  value, so `"{{steps.fetch.items}}"` yields a list, not its text.
- Placeholders embedded in longer text are substituted with the value's
  text form (JSON for dicts and lists).
- Placeholders whose path does not resolve are left verbatim.

Paths are dot-separated; numeric segments index into lists
(`steps.fetch.items.0.name`).
"""

import json
import re
from typing import Any, Mapping, Optional

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\s*\}\}")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def get_path(data: Any, path: str, default: Any = MISSING) -> Any:
    """Resolve a dot-notation path like 'steps.step_1.output.name'."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def set_path(data: dict, path: str, value: Any) -> None:
    """Set a dot-notation path, creating intermediate dicts as needed."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, bool)) or value is None:
        return json.dumps(value, default=str)
    return str(value)


def interpolate(
    template: str,
    variables: Mapping[str, Any],
    *,
    as_json: bool = False,
    missing: Optional[str] = None,
) -> str:
    """Substitute every placeholder in `template` with its text form.

    With `as_json=True` every resolved value is JSON-encoded (strings get
    quotes), which is what the condition expression parser expects.
    Unresolved placeholders are kept verbatim unless `missing` is given.
    """
    def _replace(match: re.Match) -> str:
        value = get_path(variables, match.group(1))
        if value is MISSING:
            return match.group(0) if missing is None else missing
        if as_json:
            return json.dumps(value, default=str)
        return to_text(value)

    return PLACEHOLDER_RE.sub(_replace, template)


def resolve_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Recursively resolve placeholders inside strings, dicts and lists."""
    if isinstance(value, str):
        if "{{" not in value:
            return value
        whole = PLACEHOLDER_RE.fullmatch(value.strip())
        if whole:
            resolved = get_path(variables, whole.group(1))
            return value if resolved is MISSING else resolved
        return interpolate(value, variables)
    if isinstance(value, dict):
        return {key: resolve_value(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, variables) for item in value]
    return value
