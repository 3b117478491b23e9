from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

NodeStatus = Literal["idle", "processing", "completed", "error"]

NODE_TYPES: tuple[str, ...] = (
    "imageImport",
    "textPrompt",
    "motionPrompt",
    "nanoImage",
    "geminiVideo",
    "klingVideo",
    "soraVideo",
    "gridNode",
    "cellRegenerator",
    "gridComposer",
    "llmPrompt",
)
PROMPT_SOURCE_TYPES = frozenset({"textPrompt", "motionPrompt", "llmPrompt"})
IMAGE_SOURCE_TYPES = ("imageImport", "nanoImage", "gridComposer", "cellRegenerator")
VIDEO_TYPES = frozenset({"geminiVideo", "klingVideo", "soraVideo"})
PROVIDER_TYPES = frozenset({"nanoImage", "llmPrompt"}) | VIDEO_TYPES
LOCAL_OPERATION_TYPES = frozenset({"gridNode", "cellRegenerator", "gridComposer"})
PASSIVE_TYPES = frozenset({"imageImport", "textPrompt", "motionPrompt"})


class CanvasModel(BaseModel):
    """Base for everything that crosses the workflow-file boundary (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Position(CanvasModel):
    x: float = 0.0
    y: float = 0.0


class GridSlot(CanvasModel):
    id: str
    label: str
    metadata: str = ""


class GenerativeData(CanvasModel):
    status: NodeStatus = "idle"
    error: str | None = None
    last_execution_time: float | None = None
    output: str | None = None


class ImageImportData(CanvasModel):
    image_url: str | None = None
    image_data_url: str | None = None
    width: int | None = None
    height: int | None = None
    reference_prompt: str | None = None


class TextPromptData(CanvasModel):
    prompt: str = ""


class MotionPromptData(CanvasModel):
    base_prompt: str = ""
    camera_movement: str = ""
    subject_motion: str = ""
    lighting: str = ""
    combined_prompt: str = ""


class NanoImageData(GenerativeData):
    prompt: str = ""
    model: str = "gemini-3-pro-image-preview"
    resolution: Literal["1K", "2K", "4K"] = "2K"
    aspect_ratio: str = "1:1"
    max_references: int = Field(default=3, ge=1, le=5)
    output_image_url: str | None = None
    output_image_data_url: str | None = None
    generated_model: str | None = None
    generated_resolution: str | None = None
    generated_aspect_ratio: str | None = None


class GeminiVideoData(GenerativeData):
    model: str = "veo-3.1-generate-preview"
    duration: Literal[5, 10] = 5
    motion_intensity: Literal["low", "medium", "high"] = "medium"
    quality: Literal["standard", "high"] = "high"
    input_prompt: str | None = None
    input_image_data_url: str | None = None
    output_video_url: str | None = None
    progress: int = 0


class KlingVideoData(GenerativeData):
    model: str = "kling-v1"
    duration: Literal[5, 10] = 5
    aspect_ratio: Literal["16:9", "9:16", "1:1"] = "16:9"
    enable_motion_control: bool = False
    camera_control: str = "none"
    motion_value: float = 0.0
    input_prompt: str | None = None
    input_image_data_url: str | None = None
    end_image_data_url: str | None = None
    output_video_url: str | None = None
    task_id: str | None = None
    progress: int = 0


class SoraVideoData(GenerativeData):
    model: Literal["sora-2", "sora-2-pro"] = "sora-2"
    duration: int = 4
    resolution: str = "1280x720"
    input_prompt: str | None = None
    input_image_data_url: str | None = None
    output_video_url: str | None = None
    progress: int = 0


def _default_slots() -> list[GridSlot]:
    labels = ["Front", "Side", "Back", "3/4", "Face", "Hand"]
    return [GridSlot(id=f"S{idx + 1}", label=label) for idx, label in enumerate(labels)]


class GridNodeData(GenerativeData):
    mode: Literal["character", "storyboard"] = "character"
    grid_layout: str = "2x3"
    slots: list[GridSlot] = Field(default_factory=_default_slots)
    generated_prompts: dict[str, str] = Field(default_factory=dict)
    prompt_template: str = "{prompt}, {label} view, {metadata}"


class CellRegeneratorData(GenerativeData):
    grid_layout: str | None = None
    slots: list[GridSlot] | None = None
    input_image_data_url: str | None = None
    model: str = "gemini-3-pro-image-preview"
    resolution: Literal["1K", "2K", "4K"] = "2K"
    aspect_ratio: str = "1:1"
    regenerated_images: dict[str, str] = Field(default_factory=dict)
    selected_slots: list[str] = Field(default_factory=list)


class GridComposerData(GenerativeData):
    grid_layout: str | None = None
    slots: list[GridSlot] | None = None
    input_images: dict[str, str] = Field(default_factory=dict)
    composed_image_url: str | None = None
    composed_image_data_url: str | None = None
    show_labels: bool = True
    show_borders: bool = True
    border_width: int = 2
    border_color: str = "#ffffff"
    label_size: int = 24
    label_color: str = "#ffffff"
    background_color: str = "#000000"
    cell_padding: int = 10
    aspect_ratio_mode: Literal["stretch", "contain", "cover"] = "contain"


class LLMPromptData(GenerativeData):
    input_prompt: str = ""
    output_prompt: str = ""
    mode: Literal["expand", "improve", "translate", "simplify", "describe", "analyze"] = "expand"
    style: Literal["detailed", "concise", "creative", "professional"] = "detailed"
    language: Literal["ko", "en", "auto"] = "auto"
    target_use: Literal["image", "video", "general"] = "image"
    model: str = "qwen2.5:1.5b"
    reference_image_data_url: str | None = None


class _NodeBase(CanvasModel):
    id: str
    position: Position = Field(default_factory=Position)


class ImageImportNode(_NodeBase):
    type: Literal["imageImport"] = "imageImport"
    data: ImageImportData = Field(default_factory=ImageImportData)


class TextPromptNode(_NodeBase):
    type: Literal["textPrompt"] = "textPrompt"
    data: TextPromptData = Field(default_factory=TextPromptData)


class MotionPromptNode(_NodeBase):
    type: Literal["motionPrompt"] = "motionPrompt"
    data: MotionPromptData = Field(default_factory=MotionPromptData)


class NanoImageNode(_NodeBase):
    type: Literal["nanoImage"] = "nanoImage"
    data: NanoImageData = Field(default_factory=NanoImageData)


class GeminiVideoNode(_NodeBase):
    type: Literal["geminiVideo"] = "geminiVideo"
    data: GeminiVideoData = Field(default_factory=GeminiVideoData)


class KlingVideoNode(_NodeBase):
    type: Literal["klingVideo"] = "klingVideo"
    data: KlingVideoData = Field(default_factory=KlingVideoData)


class SoraVideoNode(_NodeBase):
    type: Literal["soraVideo"] = "soraVideo"
    data: SoraVideoData = Field(default_factory=SoraVideoData)


class GridNode(_NodeBase):
    type: Literal["gridNode"] = "gridNode"
    data: GridNodeData = Field(default_factory=GridNodeData)


class CellRegeneratorNode(_NodeBase):
    type: Literal["cellRegenerator"] = "cellRegenerator"
    data: CellRegeneratorData = Field(default_factory=CellRegeneratorData)


class GridComposerNode(_NodeBase):
    type: Literal["gridComposer"] = "gridComposer"
    data: GridComposerData = Field(default_factory=GridComposerData)


class LLMPromptNode(_NodeBase):
    type: Literal["llmPrompt"] = "llmPrompt"
    data: LLMPromptData = Field(default_factory=LLMPromptData)


WorkflowNode = Annotated[
    Union[
        ImageImportNode,
        TextPromptNode,
        MotionPromptNode,
        NanoImageNode,
        GeminiVideoNode,
        KlingVideoNode,
        SoraVideoNode,
        GridNode,
        CellRegeneratorNode,
        GridComposerNode,
        LLMPromptNode,
    ],
    Field(discriminator="type"),
]

NODE_CLASSES: dict[str, type[_NodeBase]] = {
    "imageImport": ImageImportNode,
    "textPrompt": TextPromptNode,
    "motionPrompt": MotionPromptNode,
    "nanoImage": NanoImageNode,
    "geminiVideo": GeminiVideoNode,
    "klingVideo": KlingVideoNode,
    "soraVideo": SoraVideoNode,
    "gridNode": GridNode,
    "cellRegenerator": CellRegeneratorNode,
    "gridComposer": GridComposerNode,
    "llmPrompt": LLMPromptNode,
}

_node_adapter: TypeAdapter[Any] = TypeAdapter(WorkflowNode)


def edge_id_for(
    source: str,
    target: str,
    source_handle: str | None = None,
    target_handle: str | None = None,
) -> str:
    return f"{source}-{source_handle or 'output'}-{target}-{target_handle or 'input'}"


class WorkflowEdge(CanvasModel):
    id: str = ""
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = edge_id_for(self.source, self.target, self.source_handle, self.target_handle)

    def same_connection(self, other: WorkflowEdge) -> bool:
        return (
            self.source == other.source
            and self.target == other.target
            and self.source_handle == other.source_handle
            and self.target_handle == other.target_handle
        )


class WorkflowGraph(CanvasModel):
    """An immutable-by-convention snapshot of the canvas: nodes plus edges.

    The controller replaces the whole graph on every mutation, so a graph
    handed to a collaborator never changes underneath it.
    """

    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edges_to(self, node_id: str, target_handle: str | None = None) -> list[WorkflowEdge]:
        edges = [e for e in self.edges if e.target == node_id]
        if target_handle is not None:
            edges = [e for e in edges if e.target_handle == target_handle]
        return edges

    def get_edges_from(self, node_id: str) -> list[WorkflowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_nodes(self, node_id: str) -> list[WorkflowNode]:
        incoming: list[WorkflowNode] = []
        for edge in self.get_edges_to(node_id):
            node = self.get_node(edge.source)
            if node is not None:
                incoming.append(node)
        return incoming

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}


class WorkflowDocument(CanvasModel):
    version: str = "1.0"
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)


def parse_node(raw: dict[str, Any]) -> WorkflowNode:
    return _node_adapter.validate_python(raw)


def create_node(
    node_type: str,
    position: Position | dict[str, float] | None = None,
    node_id: str | None = None,
) -> WorkflowNode:
    """Build a node of ``node_type`` with default data and a fresh ``{type}-{uuid}`` id."""
    node_cls = NODE_CLASSES.get(node_type)
    if node_cls is None:
        raise KeyError(f"Unknown node type: {node_type}")
    if isinstance(position, dict):
        position = Position(**position)
    return node_cls(
        id=node_id or f"{node_type}-{uuid.uuid4()}",
        position=position or Position(),
    )


def merge_data(node: WorkflowNode, changes: dict[str, Any]) -> WorkflowNode:
    """Return a copy of ``node`` whose data has ``changes`` applied.

    Keys may be given in snake_case or camelCase; the merged payload is
    re-validated against the node's own data model.
    """
    data_cls = type(node.data)
    merged = node.data.model_dump()
    aliases = {field.alias: name for name, field in data_cls.model_fields.items() if field.alias}
    for key, value in changes.items():
        name = aliases.get(key, key)
        if name not in data_cls.model_fields:
            raise ValueError(f"{node.type} has no data field '{key}'")
        merged[name] = value
    return node.model_copy(update={"data": data_cls.model_validate(merged)})


def is_generative(node: WorkflowNode) -> bool:
    return isinstance(node.data, GenerativeData)


class AddNodeRequest(CanvasModel):
    type: str
    position: Position = Field(default_factory=Position)
    data: dict[str, Any] = Field(default_factory=dict)


class ConnectRequest(CanvasModel):
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None


class MoveRequest(CanvasModel):
    positions: dict[str, Position]


class SelectionRequest(CanvasModel):
    node_ids: list[str] = Field(default_factory=list)


class LayoutRequest(CanvasModel):
    selected_only: bool = False


def normalize_edges(nodes: list[WorkflowNode], edges: list[WorkflowEdge]) -> list[WorkflowEdge]:
    """Drop edges whose source or target is no longer in ``nodes``."""
    node_ids = {node.id for node in nodes}
    return [edge for edge in edges if edge.source in node_ids and edge.target in node_ids]
