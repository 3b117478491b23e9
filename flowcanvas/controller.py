from __future__ import annotations

from collections.abc import Iterable
from logging import getLogger
from typing import Any

from .config import AppConfig, app_config
from .connections import is_allowed
from .errors import FlowCanvasError, UnknownNodeError
from .executor import ExecutorSettings, NodeExecutor
from .history import HistoryManager
from .layout import auto_layout, layout_selection
from .models import (
    Position,
    WorkflowDocument,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    create_node,
    merge_data,
    normalize_edges,
)
from .operations import combine_motion_prompt
from .ordering import execution_order
from .providers import ProviderRegistry, register_default_providers
from .resolver import DataResolver
from .storage import BlobStore, MemoryBlobStore, SQLiteBlobStore
from .workflow_io import ImportResult, export_document, merge_document, parse_document

logger = getLogger(__name__)

_MOTION_FIELDS = {"base_prompt", "camera_movement", "subject_motion", "lighting",
                  "basePrompt", "cameraMovement", "subjectMotion"}


class WorkflowController:
    """Owns the canvas state. Every mutation goes through one of its commands.

    Collaborators only ever receive ``snapshot()`` copies; the live graph is
    replaced wholesale on each change.
    """

    def __init__(
        self,
        blob_store: BlobStore | None = None,
        providers: ProviderRegistry | None = None,
        *,
        config: AppConfig | None = None,
        executor_settings: ExecutorSettings | None = None,
        history_size: int | None = None,
        **executor_options: Any,
    ) -> None:
        self.config = config or app_config
        self.blob_store = blob_store if blob_store is not None else MemoryBlobStore()
        if providers is None:
            providers = ProviderRegistry()
            register_default_providers(providers, self.config)
        self.providers = providers
        if history_size is None:
            history_size = int(self.config.history_settings()["max_size"])
        self.history = HistoryManager(history_size)
        self.layout_settings = self.config.layout_settings()

        self._graph = WorkflowGraph()
        self._selected: set[str] = set()
        self.executor = NodeExecutor(
            self.snapshot,
            self._update_node_data,
            DataResolver(self.blob_store),
            self.providers,
            self.blob_store,
            settings=executor_settings or ExecutorSettings.from_config(self.config),
            **executor_options,
        )
        self.history.push(self._graph.nodes, self._graph.edges)

    # -- reads -------------------------------------------------------------

    @property
    def graph(self) -> WorkflowGraph:
        return self._graph

    @property
    def selected(self) -> list[str]:
        return [node.id for node in self._graph.nodes if node.id in self._selected]

    def snapshot(self) -> WorkflowGraph:
        return self._graph.model_copy(deep=True)

    def get_node(self, node_id: str) -> WorkflowNode:
        node = self._graph.get_node(node_id)
        if node is None:
            raise UnknownNodeError(node_id)
        return node

    # -- internal writes ---------------------------------------------------

    def _replace(self, nodes: list[WorkflowNode], edges: list[WorkflowEdge], *, record: bool = False) -> None:
        self._graph = WorkflowGraph(nodes=nodes, edges=normalize_edges(nodes, edges))
        self._selected &= self._graph.node_ids()
        if record:
            self.history.push(self._graph.nodes, self._graph.edges)

    def _update_node_data(self, node_id: str, changes: dict[str, Any]) -> bool:
        nodes = list(self._graph.nodes)
        for index, node in enumerate(nodes):
            if node.id == node_id:
                nodes[index] = merge_data(node, changes)
                self._graph = WorkflowGraph(nodes=nodes, edges=self._graph.edges)
                return True
        # Node removed while a run was in flight.
        return False

    # -- graph commands ----------------------------------------------------

    def add_node(
        self,
        node_type: str,
        position: Position | dict[str, float] | None = None,
        data: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> WorkflowNode:
        try:
            node = create_node(node_type, position, node_id)
            if data:
                node = merge_data(node, data)
        except (KeyError, ValueError) as exc:
            raise FlowCanvasError(str(exc).strip("'\"")) from exc
        if self._graph.get_node(node.id) is not None:
            raise FlowCanvasError(f"Node id already exists: {node.id}")
        if node.type == "motionPrompt":
            node = merge_data(node, {"combined_prompt": combine_motion_prompt(node.data)})
        self._replace([*self._graph.nodes, node], list(self._graph.edges), record=True)
        logger.debug("Added %s", node.id)
        return node

    def remove_nodes(self, node_ids: Iterable[str]) -> list[str]:
        doomed = set(node_ids) & self._graph.node_ids()
        if not doomed:
            return []
        self.executor.cancel_all(sorted(doomed))
        nodes = [node for node in self._graph.nodes if node.id not in doomed]
        self._replace(nodes, list(self._graph.edges), record=True)
        return sorted(doomed)

    def update_node_data(self, node_id: str, changes: dict[str, Any]) -> WorkflowNode:
        node = self.get_node(node_id)
        try:
            updated = merge_data(node, changes)
        except ValueError as exc:
            raise FlowCanvasError(str(exc)) from exc
        if updated.type == "motionPrompt" and _MOTION_FIELDS & changes.keys():
            updated = merge_data(updated, {"combined_prompt": combine_motion_prompt(updated.data)})
        self._update_node_data(node_id, updated.data.model_dump())
        return self.get_node(node_id)

    def move_nodes(self, positions: dict[str, Position | dict[str, float]]) -> None:
        """Position-only change; never recorded in history."""
        nodes = []
        for node in self._graph.nodes:
            position = positions.get(node.id)
            if position is not None:
                if isinstance(position, dict):
                    position = Position(**position)
                node = node.model_copy(update={"position": position})
            nodes.append(node)
        self._replace(nodes, list(self._graph.edges))

    def select(self, node_ids: Iterable[str]) -> list[str]:
        self._selected = set(node_ids) & self._graph.node_ids()
        return self.selected

    def connect(
        self,
        source: str,
        target: str,
        source_handle: str | None = None,
        target_handle: str | None = None,
    ) -> WorkflowEdge | None:
        """Add an edge if the type pair is allowed. Rejections are silent (``None``)."""
        source_node = self._graph.get_node(source)
        target_node = self._graph.get_node(target)
        if source_node is None or target_node is None:
            logger.debug("Rejected connection %s -> %s: unknown node", source, target)
            return None
        if not is_allowed(source_node.type, target_node.type):
            logger.debug("Rejected connection %s -> %s", source_node.type, target_node.type)
            return None
        edge = WorkflowEdge(source=source, target=target, source_handle=source_handle, target_handle=target_handle)
        for existing in self._graph.edges:
            if existing.same_connection(edge):
                return existing
        self._replace(list(self._graph.nodes), [*self._graph.edges, edge], record=True)
        return edge

    def remove_edges(self, edge_ids: Iterable[str]) -> list[str]:
        doomed = set(edge_ids)
        removed = [edge.id for edge in self._graph.edges if edge.id in doomed]
        if removed:
            edges = [edge for edge in self._graph.edges if edge.id not in doomed]
            self._replace(list(self._graph.nodes), edges, record=True)
        return removed

    # -- history -----------------------------------------------------------

    def undo(self) -> bool:
        entry = self.history.undo()
        if entry is None:
            return False
        self._selected.clear()
        self._replace(self.executor.settle(entry.nodes), entry.edges)
        return True

    def redo(self) -> bool:
        entry = self.history.redo()
        if entry is None:
            return False
        self._selected.clear()
        self._replace(self.executor.settle(entry.nodes), entry.edges)
        return True

    # -- execution ---------------------------------------------------------

    async def run_node(self, node_id: str) -> bool:
        self.get_node(node_id)
        return await self.executor.run(node_id)

    async def run_workflow(self, *, strict: bool = False) -> dict[str, bool]:
        """Run every node once in dependency order. Failures do not stop the run."""
        order = execution_order(self._graph.nodes, self._graph.edges, strict=strict)
        results: dict[str, bool] = {}
        for node_id in order:
            node = self._graph.get_node(node_id)
            if node is None:
                continue
            if node.type == "motionPrompt":
                self._update_node_data(node_id, {"combined_prompt": combine_motion_prompt(node.data)})
                continue
            if node.type in ("imageImport", "textPrompt"):
                continue
            results[node_id] = await self.executor.run(node_id)
        return results

    def cancel(self, node_id: str) -> bool:
        self.get_node(node_id)
        return self.executor.cancel(node_id)

    # -- layout ------------------------------------------------------------

    def auto_layout(self, selected_only: bool = False) -> dict[str, Position]:
        gaps = (float(self.layout_settings["horizontal_gap"]), float(self.layout_settings["vertical_gap"]))
        if selected_only:
            placed = layout_selection(self._graph.nodes, self._graph.edges, self._selected, *gaps)
        else:
            placed = auto_layout(self._graph.nodes, self._graph.edges, *gaps)
        self._replace(placed, list(self._graph.edges))
        return {node.id: node.position for node in placed}

    # -- import / export ---------------------------------------------------

    def export_workflow(self) -> WorkflowDocument:
        return export_document(self._graph)

    def import_workflow(self, raw: str | bytes | dict[str, Any] | WorkflowDocument) -> ImportResult:
        document = raw if isinstance(raw, WorkflowDocument) else parse_document(raw)
        result = merge_document(self._graph, document)
        self._selected.clear()
        self._replace(list(result.graph.nodes), list(result.graph.edges), record=True)
        return result

    def save_snapshot(self) -> str:
        if not isinstance(self.blob_store, SQLiteBlobStore):
            raise FlowCanvasError("Snapshots need a SQLite blob store")
        return self.blob_store.save_snapshot(self.export_workflow())

    def restore_snapshot(self) -> bool:
        """Replace the canvas with the newest saved snapshot."""
        if not isinstance(self.blob_store, SQLiteBlobStore):
            raise FlowCanvasError("Snapshots need a SQLite blob store")
        document = self.blob_store.latest_snapshot()
        if document is None:
            return False
        self.executor.cancel_all()
        self._selected.clear()
        self._replace(self.executor.settle(list(document.nodes)), list(document.edges), record=True)
        return True
