"""
Flow Registry — load and check the per-profile flow document.

The document is written by an external editor, so loading is tolerant:
a malformed document becomes an empty one, a malformed flow is skipped,
and null fields fall back to their defaults. Graph problems (missing START,
dangling edges) are reported but the flow is still loaded; the engine
discards any session that walks into a missing node.
"""
from __future__ import annotations

import structlog
from typing import Any

from pydantic import ValidationError

from models.schemas import FlowDefinition, FlowDocument, NodeType

logger = structlog.get_logger()


def _drop_nulls(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    return {k: v for k, v in item.items() if v is not None}


def parse_flow(raw: Any) -> FlowDefinition:
    """Validate one flow dict. Raises ValidationError."""
    flow = _drop_nulls(raw)
    if isinstance(flow, dict) and isinstance(flow.get("nodes"), list):
        flow["nodes"] = [_drop_nulls(n) for n in flow["nodes"]]
    return FlowDefinition.model_validate(flow)


def load_flow_document(raw: Any, profile_id: str = "") -> FlowDocument:
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("flow_document_invalid", profile_id=profile_id, type=type(raw).__name__)
        return FlowDocument()

    items = raw.get("flows")
    if items is None:
        items = []
    elif not isinstance(items, list):
        logger.warning("flow_list_invalid", profile_id=profile_id, type=type(items).__name__)
        items = []

    flows = []
    for item in items:
        try:
            flow = parse_flow(item)
        except ValidationError as e:
            flow_id = item.get("id") if isinstance(item, dict) else None
            logger.warning("flow_definition_invalid", profile_id=profile_id,
                           flow_id=flow_id, errors=e.error_count())
            continue
        problems = validate_flow(flow)
        if problems:
            logger.warning("flow_graph_problems", profile_id=profile_id,
                           flow_id=flow.id, problems=problems)
        flows.append(flow)

    idle_enabled = raw.get("idleEnabled", False)
    idle_message = raw.get("idleMessage")
    return FlowDocument(
        idle_enabled=idle_enabled is True,
        idle_message=idle_message if isinstance(idle_message, str) else None,
        flows=flows,
    )


def validate_flow(flow: FlowDefinition) -> list[str]:
    """Return human-readable graph problems; empty when the flow is sound."""
    problems = []

    starts = [n for n in flow.nodes if n.type == NodeType.START]
    if not starts:
        problems.append("no START node")
    elif len(starts) > 1:
        problems.append(f"{len(starts)} START nodes; the first one is used")

    seen: set[str] = set()
    for node in flow.nodes:
        if node.id in seen:
            problems.append(f"duplicate node id '{node.id}'")
        seen.add(node.id)

    for node in flow.nodes:
        for target in node.edges():
            if target not in seen:
                problems.append(f"node '{node.id}' points to missing node '{target}'")
        if node.type == NodeType.QUESTION:
            for option in node.options:
                if node.connections and option not in node.connections:
                    problems.append(f"question '{node.id}' option '{option}' has no branch")

    return problems
