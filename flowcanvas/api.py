from __future__ import annotations

from typing import Any

from fastapi import BackgroundTasks, Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .config import app_config
from .controller import WorkflowController
from .errors import FlowCanvasError, UnknownNodeError
from .models import (
    NODE_TYPES,
    AddNodeRequest,
    ConnectRequest,
    LayoutRequest,
    MoveRequest,
    SelectionRequest,
)
from .storage import SQLiteBlobStore


def _graph_payload(controller: WorkflowController) -> dict[str, Any]:
    payload = controller.graph.model_dump(by_alias=True)
    payload["selected"] = controller.selected
    payload["canUndo"] = controller.history.can_undo
    payload["canRedo"] = controller.history.can_redo
    return payload


def _require_node(controller: WorkflowController, node_id: str) -> None:
    if controller.graph.get_node(node_id) is None:
        raise HTTPException(status_code=404, detail="Node not found")


def default_controller() -> WorkflowController:
    storage = app_config.storage_settings()
    store = SQLiteBlobStore(str(storage["db_path"]), int(storage["max_snapshots"]))
    return WorkflowController(store)


def create_app(controller: WorkflowController | None = None) -> FastAPI:
    controller = controller or default_controller()
    app = FastAPI(title="FlowCanvas", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.controller = controller

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/node-types")
    def list_node_types() -> list[str]:
        return list(NODE_TYPES)

    @app.get("/provider-catalog")
    def provider_catalog() -> list[dict[str, str]]:
        return controller.providers.list_specs()

    @app.get("/config")
    def config() -> dict[str, dict[str, object]]:
        return {
            "executor": app_config.executor_settings(),
            "history": app_config.history_settings(),
            "layout": app_config.layout_settings(),
            "llm": app_config.llm_settings(),
        }

    @app.get("/graph")
    def get_graph() -> dict[str, Any]:
        return _graph_payload(controller)

    @app.post("/nodes")
    def add_node(request: AddNodeRequest) -> dict[str, Any]:
        try:
            node = controller.add_node(request.type, request.position, request.data or None)
        except FlowCanvasError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return node.model_dump(by_alias=True)

    @app.get("/nodes/{node_id}")
    def get_node(node_id: str) -> dict[str, Any]:
        _require_node(controller, node_id)
        return controller.get_node(node_id).model_dump(by_alias=True)

    @app.delete("/nodes/{node_id}")
    def remove_node(node_id: str) -> dict[str, Any]:
        _require_node(controller, node_id)
        controller.remove_nodes([node_id])
        return _graph_payload(controller)

    @app.patch("/nodes/{node_id}/data")
    def update_node_data(node_id: str, changes: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            node = controller.update_node_data(node_id, changes)
        except UnknownNodeError as exc:
            raise HTTPException(status_code=404, detail="Node not found") from exc
        except FlowCanvasError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return node.model_dump(by_alias=True)

    @app.post("/nodes/move")
    def move_nodes(request: MoveRequest) -> dict[str, Any]:
        controller.move_nodes(dict(request.positions))
        return _graph_payload(controller)

    @app.post("/selection")
    def select(request: SelectionRequest) -> list[str]:
        return controller.select(request.node_ids)

    @app.post("/edges")
    def connect(request: ConnectRequest) -> dict[str, Any]:
        edge = controller.connect(request.source, request.target, request.source_handle, request.target_handle)
        return {"edge": edge.model_dump(by_alias=True) if edge else None}

    @app.delete("/edges/{edge_id}")
    def remove_edge(edge_id: str) -> dict[str, Any]:
        if not controller.remove_edges([edge_id]):
            raise HTTPException(status_code=404, detail="Edge not found")
        return _graph_payload(controller)

    @app.post("/undo")
    def undo() -> dict[str, Any]:
        controller.undo()
        return _graph_payload(controller)

    @app.post("/redo")
    def redo() -> dict[str, Any]:
        controller.redo()
        return _graph_payload(controller)

    @app.post("/nodes/{node_id}/run")
    async def run_node(node_id: str, background_tasks: BackgroundTasks, wait: bool = False) -> dict[str, Any]:
        _require_node(controller, node_id)
        if not wait:
            background_tasks.add_task(controller.run_node, node_id)
            return {"nodeId": node_id, "scheduled": True}
        completed = await controller.run_node(node_id)
        return {"nodeId": node_id, "completed": completed, "node": controller.get_node(node_id).model_dump(by_alias=True)}

    @app.post("/nodes/{node_id}/cancel")
    def cancel_node(node_id: str) -> dict[str, Any]:
        _require_node(controller, node_id)
        return {"nodeId": node_id, "cancelled": controller.cancel(node_id)}

    @app.post("/workflow/run")
    async def run_workflow() -> dict[str, Any]:
        results = await controller.run_workflow()
        return {"results": results, "graph": _graph_payload(controller)}

    @app.post("/layout")
    def layout(request: LayoutRequest) -> dict[str, Any]:
        positions = controller.auto_layout(selected_only=request.selected_only)
        return {node_id: position.model_dump() for node_id, position in positions.items()}

    @app.get("/workflow/export")
    def export_workflow() -> dict[str, Any]:
        return controller.export_workflow().model_dump(by_alias=True)

    @app.post("/workflow/import")
    def import_workflow(document: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            result = controller.import_workflow(document)
        except FlowCanvasError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"idMap": result.id_map, "graph": _graph_payload(controller)}

    @app.post("/snapshots")
    def save_snapshot() -> dict[str, str]:
        try:
            return {"id": controller.save_snapshot()}
        except FlowCanvasError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/snapshots/restore")
    def restore_snapshot() -> dict[str, Any]:
        try:
            restored = controller.restore_snapshot()
        except FlowCanvasError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not restored:
            raise HTTPException(status_code=404, detail="No snapshot saved")
        return _graph_payload(controller)

    return app


app = create_app()
