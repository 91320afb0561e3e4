"""
Auto-generated output variable names.

Each node kind with outputs stores them under `{prefix}_{index}` where the
index counts the distinct nodes of that prefix already named in this
execution. Names are persisted in ExecutionState.node_outputs so a node
that is visited again keeps its first name. Templates authored against
earlier versions of a flow rely on these exact names.
"""
from __future__ import annotations

from typing import Any, Optional

from flows.models import NodeKind

OUTPUT_PREFIXES: dict[str, str] = {
    NodeKind.QUESTION: "question",
    NodeKind.EXTERNAL_CALL: "rest_api",
    NodeKind.FORM: "flow",
    NodeKind.CALENDAR_LOOKUP: "calendar",
}

# Declared output fields per prefix
OUTPUT_SCHEMAS: dict[str, tuple[str, ...]] = {
    "question": ("response",),
    "rest_api": ("data", "error", "status"),
    "flow": ("response",),
    "calendar": ("result", "error"),
}


def output_prefix(kind: str) -> Optional[str]:
    return OUTPUT_PREFIXES.get(kind)


def output_name_for(node_id: str, kind: str, node_outputs: dict[str, str]) -> str:
    """Return (and record) the output variable name for a node; '' when the kind has none."""
    if node_id in node_outputs:
        return node_outputs[node_id]
    prefix = output_prefix(kind)
    if prefix is None:
        return ""
    taken = sum(1 for name in node_outputs.values() if name.rsplit("_", 1)[0] == prefix)
    name = f"{prefix}_{taken + 1}"
    node_outputs[node_id] = name
    return name


def shape_output(prefix: str, values: dict[str, Any]) -> dict[str, Any]:
    """Project values onto the declared fields, filling missing ones with None."""
    return {field: values.get(field) for field in OUTPUT_SCHEMAS.get(prefix, tuple(values))}
