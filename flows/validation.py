"""
Flow graph validation — run at save time, before a flow can be executed.

Checks:
  - exactly one start node, unique node ids
  - every edge points at existing nodes
  - sourceHandle values leaving one node are unique
  - every node is reachable from start
"""
from __future__ import annotations

from collections import deque

import structlog

from flows.models import FlowDefinition, NodeKind
from models.errors import ValidationError

logger = structlog.get_logger()


def collect_errors(flow: FlowDefinition) -> list[str]:
    """Return a list of validation errors (empty = valid)."""
    errors: list[str] = []
    node_ids = [n.id for n in flow.nodes]
    known = set(node_ids)

    if len(known) != len(node_ids):
        seen: set[str] = set()
        for nid in node_ids:
            if nid in seen:
                errors.append(f"Duplicate node id '{nid}'")
            seen.add(nid)

    starts = [n.id for n in flow.nodes if n.kind == NodeKind.START]
    if not starts:
        errors.append("Flow has no start node")
    elif len(starts) > 1:
        errors.append(f"Flow has {len(starts)} start nodes: {starts}")

    handles: dict[str, set[str]] = {}
    for edge in flow.edges:
        if edge.source not in known:
            errors.append(f"Edge '{edge.id or edge.source + '->' + edge.target}' has unknown source '{edge.source}'")
        if edge.target not in known:
            errors.append(f"Edge '{edge.id or edge.source + '->' + edge.target}' has unknown target '{edge.target}'")
        if edge.source_handle:
            used = handles.setdefault(edge.source, set())
            if edge.source_handle in used:
                errors.append(f"Duplicate sourceHandle '{edge.source_handle}' on node '{edge.source}'")
            used.add(edge.source_handle)

    if len(starts) == 1:
        reachable = {starts[0]}
        queue = deque([starts[0]])
        while queue:
            current = queue.popleft()
            for edge in flow.out_edges(current):
                if edge.target in known and edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)
        for nid in node_ids:
            if nid not in reachable:
                errors.append(f"Node '{nid}' is not reachable from start")

    return errors


def validate_flow(flow: FlowDefinition) -> None:
    """Raise ValidationError if the graph is malformed."""
    errors = collect_errors(flow)
    if errors:
        logger.warning("invalid_flow", flow_id=flow.id, errors=errors)
        raise ValidationError(errors)
