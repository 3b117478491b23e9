from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence

from .models import Position, WorkflowEdge, WorkflowNode

HORIZONTAL_GAP = 80.0
VERTICAL_GAP = 50.0

NODE_DIMENSIONS: dict[str, tuple[float, float]] = {
    "imageImport": (192, 220),
    "nanoImage": (192, 260),
    "textPrompt": (220, 140),
    "motionPrompt": (220, 140),
    "geminiVideo": (192, 240),
    "klingVideo": (192, 240),
    "soraVideo": (192, 240),
    "gridNode": (300, 340),
    "cellRegenerator": (192, 260),
    "gridComposer": (260, 300),
    "llmPrompt": (220, 160),
}
DEFAULT_DIMENSIONS = (200.0, 200.0)


def node_dimensions(node_type: str) -> tuple[float, float]:
    return NODE_DIMENSIONS.get(node_type, DEFAULT_DIMENSIONS)


def assign_columns(nodes: Sequence[WorkflowNode], edges: Iterable[WorkflowEdge]) -> dict[str, int]:
    """Longest-path column per node, counting only edges inside ``nodes``."""
    ids = [node.id for node in nodes]
    known = set(ids)
    outgoing: dict[str, list[str]] = {node_id: [] for node_id in ids}
    indegree: dict[str, int] = {node_id: 0 for node_id in ids}
    for edge in edges:
        if edge.source in known and edge.target in known:
            outgoing[edge.source].append(edge.target)
            indegree[edge.target] += 1

    roots = [node_id for node_id in ids if indegree[node_id] == 0] or ids
    column = {node_id: 0 for node_id in roots}
    queue = deque(roots)
    # A column can never legitimately reach len(ids); capping there stops cycles.
    limit = max(len(ids) - 1, 0)

    while queue:
        node_id = queue.popleft()
        next_column = column[node_id] + 1
        if next_column > limit:
            continue
        for target in outgoing[node_id]:
            if column.get(target, -1) < next_column:
                column[target] = next_column
                queue.append(target)

    if len(column) < len(ids):
        overflow = max(column.values(), default=-1) + 1
        for node_id in ids:
            column.setdefault(node_id, overflow)
    return column


def compute_positions(
    nodes: Sequence[WorkflowNode],
    edges: Iterable[WorkflowEdge],
    horizontal_gap: float = HORIZONTAL_GAP,
    vertical_gap: float = VERTICAL_GAP,
) -> dict[str, Position]:
    if not nodes:
        return {}
    column = assign_columns(nodes, edges)

    columns: dict[int, list[WorkflowNode]] = {}
    for node in nodes:
        columns.setdefault(column[node.id], []).append(node)

    raw: dict[str, tuple[float, float]] = {}
    x_offset = 0.0
    for col in sorted(columns):
        members = columns[col]
        max_width = max(node_dimensions(node.type)[0] for node in members)
        y_offset = 0.0
        for node in members:
            width, height = node_dimensions(node.type)
            raw[node.id] = (x_offset + (max_width - width) / 2, y_offset)
            y_offset += height + vertical_gap
        x_offset += max_width + horizontal_gap

    xs = [x for x, _ in raw.values()]
    ys = [y for _, y in raw.values()]
    shift_x = (min(xs) + max(xs)) / 2
    shift_y = (min(ys) + max(ys)) / 2
    return {node_id: Position(x=x - shift_x, y=y - shift_y) for node_id, (x, y) in raw.items()}


def auto_layout(
    nodes: Sequence[WorkflowNode],
    edges: Iterable[WorkflowEdge],
    horizontal_gap: float = HORIZONTAL_GAP,
    vertical_gap: float = VERTICAL_GAP,
) -> list[WorkflowNode]:
    """Return copies of ``nodes`` placed left to right by dependency depth, centred on the origin."""
    positions = compute_positions(nodes, edges, horizontal_gap, vertical_gap)
    return [node.model_copy(update={"position": positions[node.id]}) for node in nodes]


def layout_selection(
    nodes: Sequence[WorkflowNode],
    edges: Iterable[WorkflowEdge],
    selected_ids: Iterable[str],
    horizontal_gap: float = HORIZONTAL_GAP,
    vertical_gap: float = VERTICAL_GAP,
) -> list[WorkflowNode]:
    """Lay out only the selected nodes, keeping their top-left corner where it was.

    Fewer than two selected nodes leaves everything unchanged.
    """
    wanted = set(selected_ids)
    subset = [node for node in nodes if node.id in wanted]
    if len(subset) < 2:
        return list(nodes)

    positions = compute_positions(subset, edges, horizontal_gap, vertical_gap)
    dx = min(n.position.x for n in subset) - min(p.x for p in positions.values())
    dy = min(n.position.y for n in subset) - min(p.y for p in positions.values())

    placed: list[WorkflowNode] = []
    for node in nodes:
        if node.id in positions:
            position = positions[node.id]
            node = node.model_copy(update={"position": Position(x=position.x + dx, y=position.y + dy)})
        placed.append(node)
    return placed
