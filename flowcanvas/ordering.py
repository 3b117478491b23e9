from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable
from logging import getLogger

from .errors import CycleDetectedError
from .models import WorkflowEdge, WorkflowNode

logger = getLogger(__name__)


def _kahn(nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]) -> tuple[list[str], list[str]]:
    node_ids = [node.id for node in nodes]
    known = set(node_ids)
    indegree: dict[str, int] = {node_id: 0 for node_id in node_ids}
    outgoing: dict[str, list[str]] = defaultdict(list)

    for edge in edges:
        if edge.source not in known or edge.target not in known:
            continue
        indegree[edge.target] += 1
        outgoing[edge.source].append(edge.target)

    queue = deque(node_id for node_id in node_ids if indegree[node_id] == 0)
    order: list[str] = []

    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for target in outgoing[node_id]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    ordered = set(order)
    return order, [node_id for node_id in node_ids if node_id not in ordered]


def execution_order(
    nodes: Iterable[WorkflowNode],
    edges: Iterable[WorkflowEdge],
    *,
    strict: bool = False,
) -> list[str]:
    """Topological run order for a whole-graph run.

    Nodes on a cycle, or reachable only through one, never reach in-degree
    zero and are left out. With ``strict=True`` that situation raises
    ``CycleDetectedError`` instead.
    """
    order, skipped = _kahn(nodes, edges)
    if skipped:
        if strict:
            raise CycleDetectedError(skipped)
        logger.warning("Skipping %d node(s) on or behind a cycle: %s", len(skipped), skipped)
    return order


def unordered_nodes(nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]) -> list[str]:
    return _kahn(nodes, edges)[1]
