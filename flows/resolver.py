"""
Template resolver — substitutes {{dotted.path}} tokens from the variable store.

Missing paths resolve to an empty string; non-string leaves pass through.
"""
from __future__ import annotations

import json
import re
from typing import Any

from utils.conditions import get_nested_value

_TOKEN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def resolve_string(template: str, variables: dict[str, Any]) -> str:
    if "{{" not in template:
        return template
    return _TOKEN.sub(lambda m: stringify(get_nested_value(variables, m.group(1))), template)


def resolve(template: Any, variables: dict[str, Any]) -> Any:
    """Recursively resolve strings inside dicts/lists; same shape out."""
    if isinstance(template, str):
        return resolve_string(template, variables)
    if isinstance(template, dict):
        return {k: resolve(v, variables) for k, v in template.items()}
    if isinstance(template, list):
        return [resolve(v, variables) for v in template]
    return template
