from __future__ import annotations

import json
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any

from pydantic import ValidationError

from .errors import FlowCanvasError
from .models import (
    Position,
    WorkflowDocument,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    edge_id_for,
    is_generative,
    normalize_edges,
)
from .storage import is_ephemeral_url

logger = getLogger(__name__)

IMPORT_X_PADDING = 250.0
IMPORT_X_GAP = 50.0

_TRANSIENT_RESET: dict[str, Any] = {
    "status": "idle",
    "error": None,
    "last_execution_time": None,
    "progress": 0,
    "task_id": None,
}


class WorkflowImportError(FlowCanvasError):
    pass


def sanitize_node(node: WorkflowNode) -> WorkflowNode:
    """Copy of ``node`` safe to write to a workflow file.

    Ephemeral ``blob:`` URLs are removed (map entries included) and any
    in-flight status is reset; outputs and durable references stay.
    """
    data = node.data
    fields = type(data).model_fields
    changes: dict[str, Any] = {}
    for name in fields:
        value = getattr(data, name)
        if is_ephemeral_url(value):
            changes[name] = None
        elif isinstance(value, dict) and any(is_ephemeral_url(v) for v in value.values()):
            changes[name] = {k: v for k, v in value.items() if not is_ephemeral_url(v)}

    if node.type == "imageImport" and "image_url" in changes:
        changes["width"] = None
        changes["height"] = None

    if is_generative(node):
        changes.update({key: value for key, value in _TRANSIENT_RESET.items() if key in fields})

    if not changes:
        return node.model_copy(deep=True)
    return node.model_copy(update={"data": data.model_copy(update=changes, deep=True)})


def sanitize_edge(edge: WorkflowEdge) -> WorkflowEdge:
    return WorkflowEdge(
        id=edge.id,
        source=edge.source,
        target=edge.target,
        source_handle=edge.source_handle,
        target_handle=edge.target_handle,
    )


def export_document(graph: WorkflowGraph) -> WorkflowDocument:
    return WorkflowDocument(
        nodes=[sanitize_node(node) for node in graph.nodes],
        edges=[sanitize_edge(edge) for edge in graph.edges],
    )


def dump_document(document: WorkflowDocument) -> str:
    return document.model_dump_json(by_alias=True, indent=2)


def parse_document(raw: str | bytes | dict[str, Any]) -> WorkflowDocument:
    """Read a workflow file. Also accepts the ``{"state": {...}}`` autosave envelope."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise WorkflowImportError(f"Workflow file is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise WorkflowImportError("Workflow file must be a JSON object")
    if isinstance(raw.get("state"), dict):
        raw = raw["state"]
    if not isinstance(raw.get("nodes"), list):
        raise WorkflowImportError("Workflow file has no node list")
    try:
        return WorkflowDocument.model_validate(raw)
    except ValidationError as exc:
        raise WorkflowImportError(f"Invalid workflow file: {exc.error_count()} error(s)") from exc


@dataclass(slots=True)
class ImportResult:
    graph: WorkflowGraph
    id_map: dict[str, str] = field(default_factory=dict)

    @property
    def imported_ids(self) -> list[str]:
        return list(self.id_map.values())


def import_offset(existing: Sequence[WorkflowNode]) -> float:
    if not existing:
        return IMPORT_X_GAP
    return max(node.position.x + IMPORT_X_PADDING for node in existing) + IMPORT_X_GAP


def merge_document(graph: WorkflowGraph, document: WorkflowDocument) -> ImportResult:
    """Merge ``document`` into ``graph`` to the right of the existing content.

    Imported nodes are sanitized like an export, so no in-flight status
    survives. Colliding node ids are replaced with fresh ``{type}-{uuid}``
    ids and the imported edges are rewired and re-keyed to match.
    """
    counts = Counter(node.id for node in document.nodes)
    duplicates = sorted(node_id for node_id, count in counts.items() if count > 1)
    if duplicates:
        raise WorkflowImportError(f"Workflow file repeats node id(s): {', '.join(duplicates)}")

    taken = graph.node_ids()
    offset = import_offset(graph.nodes)
    id_map: dict[str, str] = {}
    imported: list[WorkflowNode] = []

    for node in map(sanitize_node, document.nodes):
        new_id = node.id
        if new_id in taken:
            new_id = f"{node.type}-{uuid.uuid4()}"
        taken.add(new_id)
        id_map[node.id] = new_id
        position = Position(x=node.position.x + offset, y=node.position.y)
        imported.append(node.model_copy(update={"id": new_id, "position": position}))

    edges: list[WorkflowEdge] = []
    for edge in document.edges:
        source = id_map.get(edge.source, edge.source)
        target = id_map.get(edge.target, edge.target)
        edges.append(
            WorkflowEdge(
                id=edge_id_for(source, target, edge.source_handle, edge.target_handle),
                source=source,
                target=target,
                source_handle=edge.source_handle,
                target_handle=edge.target_handle,
            )
        )

    nodes = [*graph.nodes, *imported]
    merged = WorkflowGraph(nodes=nodes, edges=normalize_edges(nodes, [*graph.edges, *edges]))
    remapped = sum(1 for old, new in id_map.items() if old != new)
    logger.info("Imported %d node(s), %d edge(s); %d id(s) remapped", len(imported), len(edges), remapped)
    return ImportResult(graph=merged, id_map=id_map)
