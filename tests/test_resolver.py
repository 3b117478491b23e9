import asyncio
import logging

from flowcanvas.errors import StorageError
from flowcanvas.models import WorkflowEdge, WorkflowGraph, create_node, merge_data
from flowcanvas.resolver import DataResolver
from flowcanvas.storage import MemoryBlobStore


def _node(node_type, node_id, **data):
    node = create_node(node_type, node_id=node_id)
    return merge_data(node, data) if data else node


def _edge(source, target, source_handle=None, target_handle=None):
    return WorkflowEdge(source=source, target=target, source_handle=source_handle, target_handle=target_handle)


class BrokenStore:
    async def save(self, key, payload):
        raise StorageError("disk full")

    async def load(self, reference):
        raise StorageError("database is locked")


class TestPromptLookup:
    def setup_method(self):
        self.resolver = DataResolver(MemoryBlobStore())

    def _resolve(self, graph, node_id):
        return asyncio.run(self.resolver.resolve(node_id, graph))

    def test_prompt_handle_beats_unhandled_source(self):
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "loose", prompt="ignored"),
                _node("textPrompt", "bound", prompt="bound prompt"),
                _node("nanoImage", "img"),
            ],
            edges=[_edge("loose", "img"), _edge("bound", "img", target_handle="prompt")],
        )
        assert self._resolve(graph, "img").prompt == "bound prompt"

    def test_unhandled_fallback_reads_motion_and_llm(self):
        graph = WorkflowGraph(
            nodes=[
                _node("motionPrompt", "motion", combinedPrompt="slow pan, wind"),
                _node("nanoImage", "img"),
                _node("llmPrompt", "llm", outputPrompt="expanded idea"),
                _node("nanoImage", "img2"),
            ],
            edges=[_edge("motion", "img"), _edge("llm", "img2")],
        )
        assert self._resolve(graph, "img").prompt == "slow pan, wind"
        assert self._resolve(graph, "img2").prompt == "expanded idea"

    def test_grid_slot_prompt_is_used_verbatim(self):
        grid = _node("gridNode", "grid", generatedPrompts={"S1": "knight, Front view"})
        graph = WorkflowGraph(
            nodes=[grid, _node("nanoImage", "img")],
            edges=[_edge("grid", "img", source_handle="S1", target_handle="prompt")],
        )
        inputs = self._resolve(graph, "img")
        assert inputs.prompt == "knight, Front view"
        assert inputs.slot_id is None
        assert inputs.ok

    def test_inline_prompt_is_last_resort(self):
        graph = WorkflowGraph(nodes=[_node("nanoImage", "img", prompt="typed in")])
        assert self._resolve(graph, "img").prompt == "typed in"

    def test_missing_prompt_is_reported(self):
        inputs = self._resolve(WorkflowGraph(nodes=[_node("nanoImage", "img")]), "img")
        assert not inputs.ok
        assert inputs.missing == ["prompt"]
        assert inputs.error_message == "Missing required input: prompt"

    def test_unknown_node(self):
        inputs = self._resolve(WorkflowGraph(), "ghost")
        assert not inputs.ok


class TestReferenceImages:
    def setup_method(self):
        self.store = MemoryBlobStore()
        self.resolver = DataResolver(self.store)

    def _resolve(self, graph, node_id):
        return asyncio.run(self.resolver.resolve(node_id, graph))

    def test_ordinal_handles_and_reference_prompts(self):
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="a cat"),
                _node("textPrompt", "detail", prompt="fur detail"),
                _node("imageImport", "first", imageDataUrl="data:image/png;base64,ONE"),
                _node("imageImport", "second", imageDataUrl="data:image/png;base64,TWO"),
                _node("nanoImage", "img"),
            ],
            edges=[
                _edge("p", "img", target_handle="prompt"),
                _edge("detail", "second"),
                _edge("first", "img", target_handle="ref-1"),
                _edge("second", "img", target_handle="ref-2"),
            ],
        )
        inputs = self._resolve(graph, "img")
        assert inputs.reference_images == ["data:image/png;base64,ONE", "data:image/png;base64,TWO"]
        assert inputs.reference_prompts == ["Reference 2: fur detail"]
        assert inputs.full_prompt == "a cat\n\nReference 2: fur detail"

    def test_handles_past_max_references_are_ignored(self):
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="x"),
                _node("imageImport", "far", imageDataUrl="data:image/png;base64,FAR"),
                _node("imageImport", "near", imageDataUrl="data:image/png;base64,NEAR"),
                _node("nanoImage", "img", maxReferences=1),
            ],
            edges=[
                _edge("p", "img", target_handle="prompt"),
                _edge("near", "img", target_handle="ref-1"),
                _edge("far", "img", target_handle="ref-2"),
            ],
        )
        assert self._resolve(graph, "img").reference_images == ["data:image/png;base64,NEAR"]

    def test_second_chance_scan_skips_prompt_handle(self):
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="x"),
                _node("imageImport", "wrong", imageDataUrl="data:image/png;base64,WRONG"),
                _node("nanoImage", "upstream", outputImageDataUrl="data:image/png;base64,GEN"),
                _node("nanoImage", "img"),
            ],
            edges=[
                _edge("p", "img", target_handle="prompt"),
                _edge("wrong", "img", target_handle="prompt"),
                _edge("upstream", "img", target_handle="image-in"),
            ],
        )
        assert self._resolve(graph, "img").reference_images == ["data:image/png;base64,GEN"]

    def test_storage_reference_is_dereferenced(self):
        reference = asyncio.run(self.store.save("blob-1", "data:image/png;base64,STORED"))
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="x"),
                _node("imageImport", "src", imageDataUrl=reference),
                _node("nanoImage", "img"),
            ],
            edges=[_edge("p", "img", target_handle="prompt"), _edge("src", "img", target_handle="ref-1")],
        )
        assert self._resolve(graph, "img").reference_images == ["data:image/png;base64,STORED"]

    def test_legacy_reference_prefix(self):
        asyncio.run(self.store.save("legacy", "data:image/png;base64,OLD"))
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="x"),
                _node("imageImport", "src", imageDataUrl="idb:legacy"),
                _node("nanoImage", "img"),
            ],
            edges=[_edge("p", "img"), _edge("src", "img", target_handle="ref-1")],
        )
        assert self._resolve(graph, "img").reference_images == ["data:image/png;base64,OLD"]

    def test_failed_dereference_falls_back_to_live_url(self, caplog):
        resolver = DataResolver(BrokenStore())
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="x"),
                _node("imageImport", "src", imageDataUrl="ref:lost", imageUrl="https://cdn.example.com/a.png"),
                _node("nanoImage", "img"),
            ],
            edges=[_edge("p", "img"), _edge("src", "img", target_handle="ref-1")],
        )
        with caplog.at_level(logging.WARNING, logger="flowcanvas.resolver"):
            inputs = asyncio.run(resolver.resolve("img", graph))
        assert inputs.reference_images == ["https://cdn.example.com/a.png"]
        assert "ref:lost" in caplog.text

    def test_ephemeral_urls_are_never_used(self):
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="x"),
                _node("imageImport", "src", imageUrl="blob:http://localhost/123"),
                _node("nanoImage", "img"),
            ],
            edges=[_edge("p", "img"), _edge("src", "img", target_handle="ref-1")],
        )
        inputs = self._resolve(graph, "img")
        assert inputs.reference_images == []
        assert inputs.ok


class TestCellExtractorReferences:
    def setup_method(self):
        self.resolver = DataResolver(MemoryBlobStore())
        self.grid = _node(
            "gridNode",
            "grid",
            slots=[
                {"id": "S1", "label": "Dawn", "metadata": "misty field"},
                {"id": "S2", "label": "Dusk", "metadata": "red sky over the city"},
            ],
        )
        self.cells = _node(
            "cellRegenerator",
            "cells",
            regeneratedImages={"S1": "data:image/jpeg;base64,CELL1", "S2": "data:image/jpeg;base64,CELL2"},
        )

    def _graph(self, source_handle):
        return WorkflowGraph(
            nodes=[
                self.grid,
                self.cells,
                _node("textPrompt", "p", prompt="3x3 grid of nine panels"),
                _node("nanoImage", "img"),
            ],
            edges=[
                _edge("grid", "cells", target_handle="grid-layout"),
                _edge("p", "img", target_handle="prompt"),
                _edge("cells", "img", source_handle=source_handle, target_handle="ref-1"),
            ],
        )

    def test_specific_slot_replaces_grid_prompt(self):
        inputs = asyncio.run(self.resolver.resolve("img", self._graph("S2")))
        assert inputs.reference_images == ["data:image/jpeg;base64,CELL2"]
        assert inputs.slot_id == "S2"
        assert inputs.cell_source_id == "cells"
        assert "Scene: Dusk. red sky over the city" in inputs.prompt
        assert "nine panels" not in inputs.prompt
        assert inputs.prompt.startswith("Generate exactly ONE standalone image.")

    def test_stale_handle_heals_to_first_slot(self, caplog):
        with caplog.at_level(logging.WARNING, logger="flowcanvas.resolver"):
            inputs = asyncio.run(self.resolver.resolve("img", self._graph("output")))
        assert inputs.reference_images == ["data:image/jpeg;base64,CELL1"]
        assert inputs.slot_id == "S1"
        assert "falling back to slot S1" in caplog.text
        assert "Scene: Dawn. misty field" in inputs.prompt

    def test_empty_extractor_gives_no_reference(self):
        self.cells = _node("cellRegenerator", "cells")
        inputs = asyncio.run(self.resolver.resolve("img", self._graph("S1")))
        assert inputs.reference_images == []
        assert inputs.prompt == "3x3 grid of nine panels"


class TestOtherNodeTypes:
    def setup_method(self):
        self.resolver = DataResolver(MemoryBlobStore())

    def _resolve(self, graph, node_id):
        return asyncio.run(self.resolver.resolve(node_id, graph))

    def test_kling_start_and_end_frames(self):
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "p", prompt="walk forward"),
                _node("imageImport", "start", imageDataUrl="data:image/png;base64,START"),
                _node("nanoImage", "end", outputImageDataUrl="data:image/png;base64,END"),
                _node("klingVideo", "video"),
            ],
            edges=[
                _edge("p", "video"),
                _edge("start", "video", target_handle="start"),
                _edge("end", "video", target_handle="end"),
            ],
        )
        inputs = self._resolve(graph, "video")
        assert inputs.reference_images == ["data:image/png;base64,START"]
        assert inputs.end_image == "data:image/png;base64,END"
        assert inputs.prompt == "walk forward"
        assert inputs.ok

    def test_kling_reports_missing_inputs(self):
        inputs = self._resolve(WorkflowGraph(nodes=[_node("klingVideo", "video")]), "video")
        assert inputs.missing == ["start image", "prompt"]

    def test_gemini_needs_image_and_prompt(self):
        graph = WorkflowGraph(
            nodes=[_node("motionPrompt", "m", combinedPrompt="drift"), _node("geminiVideo", "video")],
            edges=[_edge("m", "video")],
        )
        assert self._resolve(graph, "video").missing == ["reference image"]

    def test_sora_image_is_optional(self):
        graph = WorkflowGraph(
            nodes=[_node("textPrompt", "p", prompt="city at night"), _node("soraVideo", "video")],
            edges=[_edge("p", "video")],
        )
        inputs = self._resolve(graph, "video")
        assert inputs.ok
        assert inputs.reference_images == []

    def test_llm_combines_base_and_motion_handles(self):
        graph = WorkflowGraph(
            nodes=[
                _node("textPrompt", "base", prompt="a lighthouse"),
                _node("motionPrompt", "motion", combinedPrompt="waves crash"),
                _node("llmPrompt", "llm", inputPrompt="ignored"),
            ],
            edges=[
                _edge("base", "llm", target_handle="basePrompt"),
                _edge("motion", "llm", target_handle="motionPrompt"),
            ],
        )
        assert self._resolve(graph, "llm").prompt == "a lighthouse\n\nwaves crash"

    def test_llm_describe_needs_image(self):
        graph = WorkflowGraph(nodes=[_node("llmPrompt", "llm", mode="describe", inputPrompt="hi")])
        assert self._resolve(graph, "llm").missing == ["reference image"]

    def test_cell_regenerator_inputs(self):
        graph = WorkflowGraph(
            nodes=[
                _node("gridNode", "grid", gridLayout="1x2"),
                _node("imageImport", "sheet", imageDataUrl="data:image/png;base64,SHEET"),
                _node("cellRegenerator", "cells"),
            ],
            edges=[_edge("grid", "cells", target_handle="grid-layout"), _edge("sheet", "cells")],
        )
        inputs = self._resolve(graph, "cells")
        assert inputs.grid_layout == "1x2"
        assert inputs.reference_images == ["data:image/png;base64,SHEET"]
        assert inputs.source_image_ref == "data:image/png;base64,SHEET"

    def test_cell_regenerator_missing_grid(self):
        graph = WorkflowGraph(nodes=[_node("cellRegenerator", "cells")])
        assert self._resolve(graph, "cells").missing == ["grid layout", "grid image"]

    def test_grid_composer_collects_slot_images(self):
        graph = WorkflowGraph(
            nodes=[
                _node("gridNode", "grid", gridLayout="1x2", slots=[{"id": "S1", "label": "A"}, {"id": "S2", "label": "B"}]),
                _node("imageImport", "a", imageDataUrl="data:image/png;base64,A"),
                _node("nanoImage", "b", outputImageDataUrl="data:image/png;base64,B"),
                _node("gridComposer", "composer"),
            ],
            edges=[
                _edge("grid", "composer"),
                _edge("a", "composer", target_handle="S1"),
                _edge("b", "composer", target_handle="S2"),
                _edge("a", "composer", target_handle="S9"),
            ],
        )
        inputs = self._resolve(graph, "composer")
        assert inputs.slot_images == {"S1": "data:image/png;base64,A", "S2": "data:image/png;base64,B"}
        assert inputs.ok

    def test_grid_composer_without_images(self):
        graph = WorkflowGraph(nodes=[_node("gridNode", "grid"), _node("gridComposer", "composer")], edges=[_edge("grid", "composer")])
        assert self._resolve(graph, "composer").missing == ["slot images"]
