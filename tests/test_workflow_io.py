import json

import pytest

from flowcanvas.models import Position, WorkflowDocument, WorkflowEdge, WorkflowGraph, create_node, merge_data
from flowcanvas.workflow_io import (
    WorkflowImportError,
    dump_document,
    export_document,
    import_offset,
    merge_document,
    parse_document,
    sanitize_node,
)


def _node(node_type, node_id, x=0.0, y=0.0, **data):
    node = create_node(node_type, Position(x=x, y=y), node_id=node_id)
    return merge_data(node, data) if data else node


class TestSanitize:
    def test_ephemeral_image_url_is_dropped_with_dimensions(self):
        node = _node(
            "imageImport",
            "img",
            imageUrl="blob:http://localhost/abc",
            imageDataUrl="ref:img",
            width=640,
            height=480,
        )
        clean = sanitize_node(node).data
        assert clean.image_url is None
        assert clean.width is None and clean.height is None
        assert clean.image_data_url == "ref:img"

    def test_status_is_reset_but_outputs_kept(self):
        node = _node(
            "nanoImage",
            "gen",
            status="processing",
            error="retrying (1/3)",
            lastExecutionTime=123.0,
            output="ref:out",
            outputImageDataUrl="ref:out",
        )
        clean = sanitize_node(node).data
        assert clean.status == "idle"
        assert clean.error is None
        assert clean.last_execution_time is None
        assert clean.output == "ref:out"
        assert clean.output_image_data_url == "ref:out"

    def test_video_progress_and_task_reset(self):
        node = _node("klingVideo", "v", status="processing", progress=40, taskId="task-9")
        clean = sanitize_node(node).data
        assert clean.progress == 0
        assert clean.task_id is None

    def test_ephemeral_map_entries_are_dropped(self):
        node = _node(
            "cellRegenerator",
            "cells",
            regeneratedImages={"S1": "blob:http://localhost/1", "S2": "ref:cells-S2"},
        )
        assert sanitize_node(node).data.regenerated_images == {"S2": "ref:cells-S2"}

    def test_original_is_untouched(self):
        node = _node("nanoImage", "gen", status="completed")
        sanitize_node(node)
        assert node.data.status == "completed"


class TestExport:
    def test_document_shape(self):
        graph = WorkflowGraph(
            nodes=[_node("textPrompt", "p", prompt="hello"), _node("nanoImage", "img")],
            edges=[WorkflowEdge(source="p", target="img", target_handle="prompt")],
        )
        payload = json.loads(dump_document(export_document(graph)))
        assert payload["version"] == "1.0"
        assert payload["timestamp"]
        assert [node["id"] for node in payload["nodes"]] == ["p", "img"]
        assert payload["nodes"][1]["data"]["maxReferences"] == 3
        assert payload["edges"][0] == {
            "id": "p-output-img-prompt",
            "source": "p",
            "target": "img",
            "sourceHandle": None,
            "targetHandle": "prompt",
        }


class TestParse:
    def test_plain_document(self):
        raw = {"nodes": [{"id": "p", "type": "textPrompt", "data": {"prompt": "x"}}], "edges": []}
        document = parse_document(json.dumps(raw))
        assert document.nodes[0].data.prompt == "x"
        assert document.nodes[0].position == Position()

    def test_state_envelope(self):
        raw = {"state": {"nodes": [{"id": "p", "type": "textPrompt"}], "edges": []}, "version": 0}
        assert parse_document(raw).nodes[0].id == "p"

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            "[]",
            {"edges": []},
            {"nodes": [{"id": "x", "type": "teleporter"}]},
        ],
    )
    def test_rejects_bad_files(self, raw):
        with pytest.raises(WorkflowImportError):
            parse_document(raw)


class TestMerge:
    def test_offset(self):
        assert import_offset([]) == 50.0
        nodes = [_node("textPrompt", "a", x=100), _node("textPrompt", "b", x=-20)]
        assert import_offset(nodes) == 100 + 250 + 50

    def test_colliding_ids_are_remapped_and_edges_follow(self):
        graph = WorkflowGraph(nodes=[_node("textPrompt", "p", x=100)])
        document = WorkflowDocument(
            nodes=[_node("textPrompt", "p", x=0, y=5), _node("nanoImage", "img", x=300)],
            edges=[WorkflowEdge(source="p", target="img", target_handle="prompt")],
        )
        result = merge_document(graph, document)

        new_p = result.id_map["p"]
        assert new_p != "p"
        assert new_p.startswith("textPrompt-")
        assert result.id_map["img"] == "img"
        assert sorted(result.imported_ids) == sorted([new_p, "img"])

        merged = result.graph
        assert [node.id for node in merged.nodes] == ["p", new_p, "img"]
        assert merged.get_node(new_p).position == Position(x=400, y=5)
        assert merged.get_node("img").position.x == 700
        assert len(merged.edges) == 1
        edge = merged.edges[0]
        assert (edge.source, edge.target) == (new_p, "img")
        assert edge.id == f"{new_p}-output-img-prompt"

    def test_imported_nodes_are_sanitized(self):
        document = WorkflowDocument(nodes=[_node("nanoImage", "gen", status="processing", error="retrying (1/3)")])
        imported = merge_document(WorkflowGraph(), document).graph.get_node("gen").data
        assert imported.status == "idle"
        assert imported.error is None

    def test_repeated_node_ids_are_rejected(self):
        document = WorkflowDocument(
            nodes=[_node("textPrompt", "p"), _node("nanoImage", "p")],
            edges=[WorkflowEdge(source="p", target="p")],
        )
        with pytest.raises(WorkflowImportError, match="repeats node id"):
            merge_document(WorkflowGraph(), document)

    def test_edges_to_missing_nodes_are_dropped(self):
        document = WorkflowDocument(
            nodes=[_node("textPrompt", "p")],
            edges=[WorkflowEdge(source="p", target="gone")],
        )
        result = merge_document(WorkflowGraph(), document)
        assert result.graph.edges == []
        assert result.graph.nodes[0].position.x == 50
