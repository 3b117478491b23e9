from __future__ import annotations

import asyncio
import io
import uuid

from PIL import Image

from ..cancellation import CancellationToken
from ..operations import encode_data_url
from .base import GenerationRequest, GenerationResult

_PLACEHOLDER_COLOURS = ("#f4a261", "#2a9d8f", "#e76f51", "#264653", "#e9c46a")


def placeholder_image(prompt: str, size: tuple[int, int] = (256, 256)) -> str:
    colour = _PLACEHOLDER_COLOURS[sum(map(ord, prompt)) % len(_PLACEHOLDER_COLOURS)]
    buffer = io.BytesIO()
    Image.new("RGB", size, colour).save(buffer, format="PNG")
    return encode_data_url(buffer.getvalue())


class MockImageProvider:
    """Returns a flat placeholder image, or ``fixed_output`` when given."""

    def __init__(self, fixed_output: str | None = None, latency: float = 0.0) -> None:
        self.fixed_output = fixed_output
        self.latency = latency
        self.calls: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest, cancel: CancellationToken) -> GenerationResult:
        self.calls.append(request)
        if self.latency:
            await asyncio.sleep(self.latency)
        cancel.raise_if_cancelled()
        if self.fixed_output is not None:
            return GenerationResult(output=self.fixed_output)
        return GenerationResult(output=placeholder_image(request.prompt))


class MockVideoProvider:
    def __init__(self, fixed_output: str | None = None, latency: float = 0.0) -> None:
        self.fixed_output = fixed_output
        self.latency = latency
        self.calls: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest, cancel: CancellationToken) -> GenerationResult:
        self.calls.append(request)
        if self.latency:
            await asyncio.sleep(self.latency)
        cancel.raise_if_cancelled()
        url = self.fixed_output or f"https://example.com/mock-videos/{uuid.uuid4().hex}.mp4"
        return GenerationResult(output=url, output_url=url)


class MockTextProvider:
    """Echoes the prompt with a mode prefix so tests can see what was sent."""

    def __init__(self) -> None:
        self.calls: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest, cancel: CancellationToken) -> GenerationResult:
        self.calls.append(request)
        cancel.raise_if_cancelled()
        mode = request.options.get("mode", "expand")
        text = f"[{mode}] {request.prompt}".strip()
        if request.reference_images and not request.prompt:
            text = f"[{mode}] image with {len(request.reference_images)} reference(s)"
        return GenerationResult(output=text, text=text)
