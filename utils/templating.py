"""
{{placeholder}} interpolation shared by VariableScope and the condition evaluator.
"""
from __future__ import annotations

import json
import re
from typing import Any, Callable

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def stringify(value: Any) -> str:
    """Render a variable value as text. None renders empty."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def interpolate(template: str, resolve: Callable[[str], Any]) -> str:
    """Replace {{name}} placeholders using resolve(name); misses render as ''."""
    if not template:
        return ""
    return PLACEHOLDER_RE.sub(lambda m: stringify(resolve(m.group(1))), template)
