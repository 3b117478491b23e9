from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from ..cancellation import CancellationToken

GenerationKind = Literal["image", "video", "text"]


@dataclass(slots=True)
class GenerationRequest:
    kind: GenerationKind
    prompt: str
    reference_images: list[str] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class GenerationResult:
    # Inline payload (data URL), remote URL or storage reference.
    output: str
    output_url: str | None = None
    text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class GenerationProvider(Protocol):
    async def generate(self, request: GenerationRequest, cancel: CancellationToken) -> GenerationResult: ...


@dataclass(slots=True)
class ProviderSpec:
    node_type: str
    description: str
    provider: GenerationProvider


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, ProviderSpec] = {}

    def register(self, spec: ProviderSpec) -> None:
        self._providers[spec.node_type] = spec

    def get(self, node_type: str) -> GenerationProvider:
        if node_type not in self._providers:
            raise KeyError(f"No provider registered for node type: {node_type}")
        return self._providers[node_type].provider

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._providers

    def list_types(self) -> list[str]:
        return sorted(self._providers)

    def list_specs(self) -> list[dict[str, str]]:
        return [
            {"type": self._providers[key].node_type, "description": self._providers[key].description}
            for key in sorted(self._providers)
        ]
