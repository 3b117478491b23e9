from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any

from .cancellation import CancellationToken
from .config import AppConfig, app_config
from .errors import (
    CANCELLED_MESSAGE,
    ExecutionCancelled,
    RateLimitError,
    StorageError,
    UnknownNodeError,
    classify_error,
)
from .models import (
    LOCAL_OPERATION_TYPES,
    PASSIVE_TYPES,
    VIDEO_TYPES,
    WorkflowGraph,
    WorkflowNode,
    is_generative,
)
from .operations import compose_grid, generate_slot_prompts, parse_grid_layout, split_grid_image
from .providers.base import GenerationRequest, ProviderRegistry
from .resolver import DataResolver, ResolvedInputs
from .retry import IMAGE_RETRY, VIDEO_RETRY, RetryPolicy, retry_with_backoff
from .storage import BlobStore, is_storage_reference

logger = getLogger(__name__)

GraphReader = Callable[[], WorkflowGraph]
DataWriter = Callable[[str, dict[str, Any]], Any]

INVALIDATED_NOTICE = "Source cells were re-extracted. Run this node again."


@dataclass(slots=True)
class ExecutorSettings:
    image_min_interval: float = 3.0
    video_min_interval: float = 5.0
    image_retry: RetryPolicy = field(default_factory=lambda: IMAGE_RETRY)
    video_retry: RetryPolicy = field(default_factory=lambda: VIDEO_RETRY)

    @classmethod
    def from_config(cls, config: AppConfig | None = None) -> ExecutorSettings:
        values = (config or app_config).executor_settings()
        max_delay = float(values["max_delay"])
        factor = float(values["backoff_factor"])
        return cls(
            image_min_interval=float(values["image_min_interval"]),
            video_min_interval=float(values["video_min_interval"]),
            image_retry=RetryPolicy(
                max_attempts=int(values["image_max_attempts"]),
                initial_delay=float(values["image_initial_delay"]),
                max_delay=max_delay,
                backoff_factor=factor,
            ),
            video_retry=RetryPolicy(
                max_attempts=int(values["video_max_attempts"]),
                initial_delay=float(values["video_initial_delay"]),
                max_delay=max_delay,
                backoff_factor=factor,
            ),
        )

    def min_interval(self, node_type: str) -> float:
        if node_type in VIDEO_TYPES:
            return self.video_min_interval
        if node_type == "nanoImage":
            return self.image_min_interval
        return 0.0

    def retry_policy(self, node_type: str) -> RetryPolicy:
        return self.video_retry if node_type in VIDEO_TYPES else self.image_retry


def _supported(node: WorkflowNode, changes: dict[str, Any]) -> dict[str, Any]:
    fields = type(node.data).model_fields
    return {key: value for key, value in changes.items() if key in fields}


class NodeExecutor:
    """Runs one node at a time per node id and writes its status back.

    The executor never holds graph state: it reads a fresh snapshot through
    ``read_graph`` and writes per-node data changes through ``update_data``.
    """

    def __init__(
        self,
        read_graph: GraphReader,
        update_data: DataWriter,
        resolver: DataResolver,
        providers: ProviderRegistry,
        blob_store: BlobStore | None = None,
        *,
        settings: ExecutorSettings | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.read_graph = read_graph
        self.update_data = update_data
        self.resolver = resolver
        self.providers = providers
        self.blob_store = blob_store
        self.settings = settings or ExecutorSettings()
        self.clock = clock
        self.sleep = sleep
        self._handles: dict[str, CancellationToken] = {}

    # -- handle table ------------------------------------------------------

    def is_running(self, node_id: str) -> bool:
        return node_id in self._handles

    def running(self) -> list[str]:
        return sorted(self._handles)

    @contextmanager
    def start(self, node_id: str) -> Iterator[CancellationToken]:
        token = CancellationToken(node_id)
        self._handles[node_id] = token
        try:
            yield token
        finally:
            if self._handles.get(node_id) is token:
                del self._handles[node_id]

    def cancel(self, node_id: str) -> bool:
        token = self._handles.pop(node_id, None)
        if token is not None:
            token.cancel()
        node = self.read_graph().get_node(node_id)
        if node is not None and is_generative(node) and (token is not None or node.data.status == "processing"):
            self.update_data(node_id, _supported(node, {"status": "idle", "error": CANCELLED_MESSAGE, "progress": 0}))
            logger.info("Cancelled execution of %s", node_id)
        return token is not None

    def cancel_all(self, node_ids: list[str] | None = None) -> list[str]:
        targets = list(self._handles) if node_ids is None else [n for n in node_ids if n in self._handles]
        return [node_id for node_id in targets if self.cancel(node_id)]

    def settle(self, nodes: list[WorkflowNode]) -> list[WorkflowNode]:
        """Reset ``processing`` on nodes that have no live run behind them.

        Undo, redo and snapshot restores bring back data recorded mid-run.
        """
        settled: list[WorkflowNode] = []
        for node in nodes:
            if is_generative(node) and node.data.status == "processing" and node.id not in self._handles:
                changes = _supported(node, {"status": "idle", "progress": 0})
                node = node.model_copy(update={"data": node.data.model_copy(update=changes)})
                logger.debug("Cleared stale processing status on %s", node.id)
            settled.append(node)
        return settled

    def _write(self, token: CancellationToken, node: WorkflowNode, changes: dict[str, Any]) -> bool:
        if token.cancelled or self._handles.get(node.id) is not token:
            logger.debug("Dropping late write for cancelled node %s", node.id)
            return False
        self.update_data(node.id, _supported(node, changes))
        return True

    # -- execution ---------------------------------------------------------

    async def run(self, node_id: str) -> bool:
        """Execute ``node_id`` once. Returns ``True`` only when it completed."""
        graph = self.read_graph()
        node = graph.get_node(node_id)
        if node is None:
            raise UnknownNodeError(node_id)
        if node.type in PASSIVE_TYPES:
            return False
        if node_id in self._handles:
            logger.debug("Ignoring run request for busy node %s", node_id)
            return False

        now = self.clock()
        interval = self.settings.min_interval(node.type)
        last = node.data.last_execution_time
        if interval and last is not None and now - last < interval:
            exc = RateLimitError(interval - (now - last))
            self.update_data(node_id, {"status": "error", "error": str(exc)})
            logger.info("Rate limited %s: %s", node_id, exc)
            return False

        with self.start(node_id) as token:
            inputs = await self.resolver.resolve(node_id, graph)
            if token.cancelled:
                return False
            if not inputs.ok:
                self._write(token, node, {"status": "error", "error": inputs.error_message})
                return False

            started = {"status": "processing", "error": None, "last_execution_time": now}
            if node.type in VIDEO_TYPES:
                started["progress"] = 10
            self._write(token, node, started)
            logger.info("Running %s (%s)", node_id, node.type)

            try:
                if node.type in LOCAL_OPERATION_TYPES:
                    changes = await self._run_local(node, inputs, graph)
                else:
                    changes = await self._run_provider(node, inputs, token)
            except ExecutionCancelled:
                logger.info("Execution of %s stopped after cancellation", node_id)
                return False
            except Exception as exc:
                if token.cancelled:
                    return False
                logger.warning("Execution of %s failed: %s", node_id, exc)
                self._write(token, node, {"status": "error", "error": classify_error(exc), "progress": 0})
                return False

            changes.update(status="completed", error=None)
            if not self._write(token, node, changes):
                return False

        if node.type == "cellRegenerator":
            self._invalidate_downstream(node_id)
        logger.info("Completed %s", node_id)
        return True

    async def _persist(self, node_id: str, payload: str) -> str:
        if is_storage_reference(payload) or payload.startswith(("http://", "https://")):
            return payload
        if self.blob_store is None:
            return payload
        try:
            return await self.blob_store.save(f"{node_id}-{uuid.uuid4().hex}", payload)
        except StorageError as exc:
            logger.warning("Keeping %s output inline: %s", node_id, exc)
            return payload

    def _build_request(self, node: WorkflowNode, inputs: ResolvedInputs) -> GenerationRequest:
        data = node.data
        if node.type == "nanoImage":
            options = {"model": data.model, "resolution": data.resolution, "aspect_ratio": data.aspect_ratio}
            return GenerationRequest("image", inputs.full_prompt, inputs.reference_images, options)
        if node.type == "llmPrompt":
            options = {
                "mode": data.mode,
                "style": data.style,
                "language": data.language,
                "target_use": data.target_use,
                "model": data.model,
            }
            return GenerationRequest("text", inputs.prompt, inputs.reference_images, options)
        if node.type == "geminiVideo":
            options = {
                "model": data.model,
                "duration": data.duration,
                "motion_intensity": data.motion_intensity,
                "quality": data.quality,
            }
        elif node.type == "klingVideo":
            options = {
                "model": data.model,
                "duration": data.duration,
                "aspect_ratio": data.aspect_ratio,
                "camera_control": data.camera_control if data.enable_motion_control else "none",
                "motion_value": data.motion_value,
                "end_image": inputs.end_image,
            }
        else:
            options = {"model": data.model, "duration": data.duration, "resolution": data.resolution}
        return GenerationRequest("video", inputs.prompt, inputs.reference_images, options)

    async def _run_provider(
        self,
        node: WorkflowNode,
        inputs: ResolvedInputs,
        token: CancellationToken,
    ) -> dict[str, Any]:
        provider = self.providers.get(node.type)
        request = self._build_request(node, inputs)

        def on_retry(attempt: int, max_attempts: int, exc: BaseException) -> None:
            self._write(token, node, {"error": f"retrying ({attempt}/{max_attempts})"})

        result = await retry_with_backoff(
            lambda: provider.generate(request, token),
            self.settings.retry_policy(node.type),
            on_retry=on_retry,
            cancel=token,
            sleep=self.sleep,
        )

        if node.type == "llmPrompt":
            text = result.text or result.output
            return {"output": text, "output_prompt": text}

        reference = await self._persist(node.id, result.output)
        if node.type == "nanoImage":
            return {
                "output": reference,
                "output_image_data_url": reference,
                "output_image_url": result.output_url,
                "generated_model": node.data.model,
                "generated_resolution": node.data.resolution,
                "generated_aspect_ratio": node.data.aspect_ratio,
            }
        return {
            "output": reference,
            "output_video_url": result.output_url or reference,
            "task_id": result.metadata.get("task_id"),
            "progress": 100,
        }

    async def _run_local(self, node: WorkflowNode, inputs: ResolvedInputs, graph: WorkflowGraph) -> dict[str, Any]:
        if node.type == "gridNode":
            prompts = generate_slot_prompts(node.data.prompt_template, inputs.prompt, inputs.slots)
            return {"generated_prompts": prompts}

        rows, cols = parse_grid_layout(inputs.grid_layout or "")
        slots = [slot.model_copy() for slot in inputs.slots]

        if node.type == "cellRegenerator":
            connected = [
                e.source_handle for e in graph.get_edges_from(node.id) if e.source_handle and e.source_handle != "output"
            ]
            targets = set(connected) | set(node.data.selected_slots)
            cells = await asyncio.to_thread(split_grid_image, inputs.reference_images[0], rows, cols, [s.id for s in slots])
            if targets:
                cells = {slot_id: cell for slot_id, cell in cells.items() if slot_id in targets}
                regenerated: dict[str, str] = {}
            else:
                regenerated = dict(node.data.regenerated_images)
            for slot_id, cell in cells.items():
                regenerated[slot_id] = await self._persist(f"{node.id}-{slot_id}", cell)
            logger.info("Extracted %d cell(s) from %s", len(cells), node.id)
            return {
                "regenerated_images": regenerated,
                "grid_layout": inputs.grid_layout,
                "slots": slots,
                "input_image_data_url": inputs.source_image_ref,
            }

        composed = await asyncio.to_thread(compose_grid, rows, cols, slots, inputs.slot_images, node.data)
        reference = await self._persist(node.id, composed)
        return {
            "output": reference,
            "composed_image_data_url": reference,
            "grid_layout": inputs.grid_layout,
            "slots": slots,
        }

    def _invalidate_downstream(self, node_id: str) -> None:
        graph = self.read_graph()
        for edge in graph.get_edges_from(node_id):
            target = graph.get_node(edge.target)
            if target is None or target.type != "nanoImage" or target.id in self._handles:
                continue
            if not (target.data.output or target.data.output_image_data_url or target.data.output_image_url):
                continue
            self.update_data(
                target.id,
                {
                    "status": "idle",
                    "output": None,
                    "output_image_data_url": None,
                    "output_image_url": None,
                    "error": INVALIDATED_NOTICE,
                },
            )
            logger.info("Invalidated %s after cell extraction on %s", target.id, node_id)
