from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from logging import getLogger

from .errors import StorageError
from .models import (
    IMAGE_SOURCE_TYPES,
    PROMPT_SOURCE_TYPES,
    GridSlot,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
)
from .operations import combine_motion_prompt
from .storage import BlobStore, is_ephemeral_url, is_storage_reference

logger = getLogger(__name__)

SINGLE_SCENE_PROMPT = (
    "Generate exactly ONE standalone image. This is NOT a grid, NOT a collage, "
    "NOT multi-panel. Output a SINGLE scene only.\n\n"
    "{scene}"
    "Use the reference image as visual guide for this ONE scene ({slot}{label}).\n"
    "Recreate the scene with high quality, photorealistic rendering.\n"
    "Remove any text labels, borders, or grid artifacts from the reference."
)


@dataclass(slots=True)
class ResolvedInputs:
    """Everything a node needs to run, already dereferenced.

    ``missing`` names the input classes that could not be found; the
    executor decides whether that is fatal.
    """

    node_id: str
    node_type: str
    prompt: str = ""
    reference_images: list[str] = field(default_factory=list)
    reference_prompts: list[str] = field(default_factory=list)
    end_image: str | None = None
    slot_id: str | None = None
    slot_label: str | None = None
    cell_source_id: str | None = None
    grid_layout: str | None = None
    slots: list[GridSlot] = field(default_factory=list)
    slot_images: dict[str, str] = field(default_factory=dict)
    source_image_ref: str | None = None
    missing: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing

    @property
    def full_prompt(self) -> str:
        if not self.reference_prompts:
            return self.prompt
        return "\n\n".join([self.prompt, *self.reference_prompts])

    @property
    def error_message(self) -> str | None:
        if self.ok:
            return None
        return f"Missing required input: {', '.join(self.missing)}"


@dataclass(slots=True)
class _ImageSource:
    candidates: list[str | None]
    ref_prompt: str | None = None
    slot_id: str | None = None
    slot_label: str | None = None
    cell_source_id: str | None = None


def prompt_text(node: WorkflowNode | None) -> str:
    """Text a prompt-shaped node contributes downstream."""
    if node is None:
        return ""
    if node.type == "textPrompt":
        return node.data.prompt or ""
    if node.type == "motionPrompt":
        return node.data.combined_prompt or combine_motion_prompt(node.data)
    if node.type == "llmPrompt":
        return node.data.output_prompt or ""
    return ""


class DataResolver:
    def __init__(self, blob_store: BlobStore | None = None) -> None:
        self.blob_store = blob_store
        self._handlers: dict[str, Callable[[WorkflowNode, WorkflowGraph, ResolvedInputs], Awaitable[None]]] = {
            "nanoImage": self._resolve_nano_image,
            "geminiVideo": self._resolve_gemini_video,
            "klingVideo": self._resolve_kling_video,
            "soraVideo": self._resolve_sora_video,
            "llmPrompt": self._resolve_llm_prompt,
            "gridNode": self._resolve_grid_node,
            "cellRegenerator": self._resolve_cell_regenerator,
            "gridComposer": self._resolve_grid_composer,
        }

    async def resolve(self, node_id: str, graph: WorkflowGraph) -> ResolvedInputs:
        node = graph.get_node(node_id)
        if node is None:
            return ResolvedInputs(node_id=node_id, node_type="", missing=["node"])
        inputs = ResolvedInputs(node_id=node_id, node_type=node.type)
        handler = self._handlers.get(node.type)
        if handler is not None:
            await handler(node, graph, inputs)
        return inputs

    # -- prompts -----------------------------------------------------------

    def _lookup_prompt(self, node_id: str, graph: WorkflowGraph) -> str:
        for edge in graph.get_edges_to(node_id):
            source = graph.get_node(edge.source)
            if source is not None and source.type == "gridNode":
                slot_id = edge.source_handle
                return source.data.generated_prompts.get(slot_id, "") if slot_id else ""

        handle_edges = graph.get_edges_to(node_id, "prompt")
        if handle_edges:
            return prompt_text(graph.get_node(handle_edges[0].source))

        return self._first_prompt_source(node_id, graph)

    def _first_prompt_source(self, node_id: str, graph: WorkflowGraph) -> str:
        for source in graph.get_incoming_nodes(node_id):
            if source.type in PROMPT_SOURCE_TYPES:
                return prompt_text(source)
        return ""

    def _incoming_text_prompt(self, node_id: str, graph: WorkflowGraph) -> str | None:
        edges = graph.get_edges_to(node_id)
        if not edges:
            return None
        source = graph.get_node(edges[0].source)
        if source is None or source.type != "textPrompt":
            return None
        return source.data.prompt

    # -- images ------------------------------------------------------------

    def _image_source(self, source: WorkflowNode, edge: WorkflowEdge, graph: WorkflowGraph) -> _ImageSource:
        data = source.data
        if source.type == "imageImport":
            ref_prompt = self._incoming_text_prompt(source.id, graph) or data.reference_prompt
            return _ImageSource([data.image_data_url, data.image_url], ref_prompt=ref_prompt)
        if source.type == "nanoImage":
            return _ImageSource([data.output_image_data_url, data.output_image_url])
        if source.type == "gridComposer":
            return _ImageSource([data.composed_image_data_url, data.composed_image_url])
        if source.type == "cellRegenerator":
            cell_id = edge.source_handle
            images = data.regenerated_images
            if (not cell_id or cell_id == "output" or cell_id not in images) and images:
                fallback = next(iter(images))
                logger.warning(
                    "Cell handle %r on %s is stale; falling back to slot %s",
                    cell_id,
                    source.id,
                    fallback,
                )
                cell_id = fallback
            if not cell_id or cell_id not in images:
                return _ImageSource([])
            return _ImageSource(
                [images[cell_id]],
                slot_id=cell_id,
                slot_label=_slot_label(data.slots or [], cell_id),
                cell_source_id=source.id,
            )
        return _ImageSource([])

    async def _load_first(self, candidates: list[str | None]) -> tuple[str | None, str | None]:
        """First usable payload plus the raw value it came from.

        Storage references are dereferenced; a failed load falls through to
        the next live value. Ephemeral ``blob:`` URLs are never usable here.
        """
        for value in candidates:
            if not value or is_ephemeral_url(value):
                continue
            if not is_storage_reference(value):
                return value, value
            if self.blob_store is None:
                logger.warning("No blob store configured; cannot dereference %s", value)
                continue
            try:
                payload = await self.blob_store.load(value)
            except StorageError as exc:
                logger.warning("Failed to load %s: %s", value, exc)
                continue
            if payload:
                return payload, value
            logger.warning("Storage reference %s not found", value)
        return None, None

    async def _first_image(
        self,
        edges: list[WorkflowEdge],
        graph: WorkflowGraph,
    ) -> tuple[str | None, _ImageSource | None]:
        for edge in edges:
            source = graph.get_node(edge.source)
            if source is None or source.type not in IMAGE_SOURCE_TYPES:
                continue
            found = self._image_source(source, edge, graph)
            image, _ = await self._load_first(found.candidates)
            if image:
                return image, found
        return None, None

    # -- per node type -----------------------------------------------------

    async def _resolve_nano_image(self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs) -> None:
        prompt = self._lookup_prompt(node.id, graph) or node.data.prompt

        def take(found: _ImageSource, image: str, ref_prompt: str | None) -> None:
            inputs.reference_images.append(image)
            if ref_prompt:
                inputs.reference_prompts.append(ref_prompt)
            if found.cell_source_id and inputs.cell_source_id is None:
                inputs.cell_source_id = found.cell_source_id
                inputs.slot_id = found.slot_id
                inputs.slot_label = found.slot_label

        for index in range(1, node.data.max_references + 1):
            edges = graph.get_edges_to(node.id, f"ref-{index}")
            if not edges:
                continue
            source = graph.get_node(edges[0].source)
            if source is None:
                continue
            found = self._image_source(source, edges[0], graph)
            image, _ = await self._load_first(found.candidates)
            if image:
                take(found, image, f"Reference {index}: {found.ref_prompt}" if found.ref_prompt else None)

        if not inputs.reference_images:
            candidates = [e for e in graph.get_edges_to(node.id) if e.target_handle != "prompt"]
            image, found = await self._first_image(candidates, graph)
            if image and found is not None:
                logger.info("%s: using unhandled image connection as reference", node.id)
                take(found, image, found.ref_prompt)

        if not inputs.reference_images:
            incoming = graph.get_incoming_nodes(node.id)
            for source_type in ("imageImport", "nanoImage", "gridComposer"):
                source = next((n for n in incoming if n.type == source_type), None)
                if source is None:
                    continue
                found = self._image_source(source, WorkflowEdge(source=source.id, target=node.id), graph)
                image, _ = await self._load_first(found.candidates)
                if image:
                    take(found, image, f"Reference 1: {found.ref_prompt}" if found.ref_prompt else None)
                break

        if inputs.cell_source_id:
            prompt = self._single_scene_prompt(inputs, graph)

        inputs.prompt = prompt
        if not prompt.strip():
            inputs.missing.append("prompt")

    def _single_scene_prompt(self, inputs: ResolvedInputs, graph: WorkflowGraph) -> str:
        slot = self._extractor_slot(inputs.cell_source_id, inputs.slot_id, graph)
        scene = ""
        if slot is not None:
            scene = f"Scene: {slot.label}. {slot.metadata or ''}".rstrip() + "\n\n"
        label = f" - {inputs.slot_label}" if inputs.slot_label else ""
        return SINGLE_SCENE_PROMPT.format(scene=scene, slot=inputs.slot_id or "cell", label=label)

    def _extractor_slot(self, extractor_id: str | None, slot_id: str | None, graph: WorkflowGraph) -> GridSlot | None:
        if not extractor_id or not slot_id:
            return None
        for edge in graph.get_edges_to(extractor_id, "grid-layout"):
            grid = graph.get_node(edge.source)
            if grid is not None and grid.type == "gridNode":
                return _find_slot(grid.data.slots, slot_id)
        extractor = graph.get_node(extractor_id)
        if extractor is not None and extractor.type == "cellRegenerator":
            return _find_slot(extractor.data.slots or [], slot_id)
        return None

    async def _resolve_gemini_video(self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs) -> None:
        image, _ = await self._first_image(graph.get_edges_to(node.id), graph)
        if image:
            inputs.reference_images.append(image)
        inputs.prompt = self._lookup_prompt(node.id, graph)
        if not inputs.reference_images:
            inputs.missing.append("reference image")
        if not inputs.prompt.strip():
            inputs.missing.append("prompt")

    async def _resolve_kling_video(self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs) -> None:
        start_edges = [e for e in graph.get_edges_to(node.id) if e.target_handle in (None, "", "start")]
        start, _ = await self._first_image(start_edges, graph)
        if start:
            inputs.reference_images.append(start)
        inputs.end_image, _ = await self._first_image(graph.get_edges_to(node.id, "end"), graph)
        inputs.prompt = self._first_prompt_source(node.id, graph)
        if not start:
            inputs.missing.append("start image")
        if not inputs.prompt.strip():
            inputs.missing.append("prompt")

    async def _resolve_sora_video(self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs) -> None:
        image_edges = [e for e in graph.get_edges_to(node.id) if e.target_handle in (None, "", "image")]
        image, _ = await self._first_image(image_edges, graph)
        if image:
            inputs.reference_images.append(image)
        inputs.prompt = self._first_prompt_source(node.id, graph)
        if not inputs.prompt.strip():
            inputs.missing.append("prompt")

    async def _resolve_llm_prompt(self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs) -> None:
        parts = []
        for handle in ("basePrompt", "motionPrompt"):
            edges = graph.get_edges_to(node.id, handle)
            if edges:
                parts.append(prompt_text(graph.get_node(edges[0].source)))
        prompt = "\n\n".join(part for part in parts if part.strip())
        if not prompt:
            prompt = node.data.input_prompt
        if not prompt:
            edges = graph.get_edges_to(node.id, "prompt")
            if edges:
                prompt = prompt_text(graph.get_node(edges[0].source))
        inputs.prompt = prompt or ""

        image, _ = await self._first_image(graph.get_edges_to(node.id, "image"), graph)
        if image is None and node.data.reference_image_data_url:
            image, _ = await self._load_first([node.data.reference_image_data_url])
        if image:
            inputs.reference_images.append(image)

        if node.data.mode in ("describe", "analyze"):
            if not inputs.reference_images:
                inputs.missing.append("reference image")
        elif not inputs.prompt.strip() and not inputs.reference_images:
            inputs.missing.append("prompt")

    async def _resolve_grid_node(self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs) -> None:
        inputs.prompt = self._first_prompt_source(node.id, graph)
        inputs.grid_layout = node.data.grid_layout
        inputs.slots = list(node.data.slots)

    def _grid_info(self, node: WorkflowNode, graph: WorkflowGraph) -> tuple[str | None, list[GridSlot]]:
        edges = graph.get_edges_to(node.id, "grid-layout") or graph.get_edges_to(node.id)
        for edge in edges:
            grid = graph.get_node(edge.source)
            if grid is not None and grid.type == "gridNode":
                return grid.data.grid_layout, list(grid.data.slots)
        return node.data.grid_layout, list(node.data.slots or [])

    async def _resolve_cell_regenerator(
        self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs
    ) -> None:
        inputs.grid_layout, inputs.slots = self._grid_info(node, graph)

        for edge in graph.get_edges_to(node.id):
            source = graph.get_node(edge.source)
            if source is None or source.type not in IMAGE_SOURCE_TYPES or source.id == node.id:
                continue
            image, raw = await self._load_first(self._image_source(source, edge, graph).candidates)
            if image:
                inputs.reference_images.append(image)
                inputs.source_image_ref = raw
                break
        if not inputs.reference_images and node.data.input_image_data_url:
            image, raw = await self._load_first([node.data.input_image_data_url])
            if image:
                inputs.reference_images.append(image)
                inputs.source_image_ref = raw

        if not inputs.grid_layout or not inputs.slots:
            inputs.missing.append("grid layout")
        if not inputs.reference_images:
            inputs.missing.append("grid image")

    async def _resolve_grid_composer(self, node: WorkflowNode, graph: WorkflowGraph, inputs: ResolvedInputs) -> None:
        inputs.grid_layout, inputs.slots = self._grid_info(node, graph)
        slot_ids = {slot.id for slot in inputs.slots}

        for edge in graph.get_edges_to(node.id):
            if edge.target_handle not in slot_ids or edge.target_handle in inputs.slot_images:
                continue
            source = graph.get_node(edge.source)
            if source is None or source.type not in IMAGE_SOURCE_TYPES:
                continue
            image, _ = await self._load_first(self._image_source(source, edge, graph).candidates)
            if image:
                inputs.slot_images[edge.target_handle] = image

        if not inputs.grid_layout or not inputs.slots:
            inputs.missing.append("grid layout")
        if not inputs.slot_images:
            inputs.missing.append("slot images")


def _find_slot(slots: list[GridSlot], slot_id: str) -> GridSlot | None:
    return next((slot for slot in slots if slot.id == slot_id), None)


def _slot_label(slots: list[GridSlot], slot_id: str) -> str | None:
    slot = _find_slot(slots, slot_id)
    return slot.label if slot is not None else None
