from __future__ import annotations

from ..config import AppConfig, app_config
from .base import GenerationProvider, GenerationRequest, GenerationResult, ProviderRegistry, ProviderSpec
from .llm import OllamaPromptProvider
from .mock import MockImageProvider, MockTextProvider, MockVideoProvider


def register_default_providers(registry: ProviderRegistry, config: AppConfig | None = None) -> None:
    config = config or app_config
    registry.register(ProviderSpec("nanoImage", "Image generation (placeholder output)", MockImageProvider()))
    video = MockVideoProvider()
    for node_type in ("geminiVideo", "klingVideo", "soraVideo"):
        registry.register(ProviderSpec(node_type, "Video generation (placeholder output)", video))
    if "ollama" in config.llm_settings()["providers"]:
        registry.register(ProviderSpec("llmPrompt", "Prompt helper via local Ollama", OllamaPromptProvider(config)))
    else:
        registry.register(ProviderSpec("llmPrompt", "Prompt helper (echo)", MockTextProvider()))


__all__ = [
    "GenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "MockImageProvider",
    "MockTextProvider",
    "MockVideoProvider",
    "OllamaPromptProvider",
    "ProviderRegistry",
    "ProviderSpec",
    "register_default_providers",
]
