from __future__ import annotations

from logging import getLogger
from typing import Any

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from ..cancellation import CancellationToken
from ..config import AppConfig, app_config
from ..errors import ProviderError
from .base import GenerationRequest, GenerationResult

logger = getLogger(__name__)


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts: list[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and isinstance(item.get("text"), str):
            parts.append(item["text"])
    return "\n".join(parts).strip()


class OllamaPromptProvider:
    """Prompt helper backed by a local Ollama model through LangChain."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self.config = config or app_config
        self.settings = self.config.llm_settings()

    def _system_prompt(self, options: dict[str, Any]) -> str:
        parts = [
            self.config.llm_instruction(str(options.get("mode", "expand"))),
            self.config.llm_style_hint(str(options.get("style", "detailed"))),
            self.config.llm_target_hint(str(options.get("target_use", "image"))),
        ]
        language = options.get("language", "auto")
        if language == "ko":
            parts.append("Answer in Korean.")
        elif language == "en":
            parts.append("Answer in English.")
        return "\n".join(part for part in parts if part)

    def _messages(self, request: GenerationRequest) -> list[BaseMessage]:
        system = SystemMessage(content=self._system_prompt(request.options))
        if not request.reference_images:
            return [system, HumanMessage(content=request.prompt)]
        content: list[str | dict[str, Any]] = [{"type": "text", "text": request.prompt or "Describe this image."}]
        for image in request.reference_images:
            content.append({"type": "image_url", "image_url": image})
        return [system, HumanMessage(content=content)]

    async def generate(self, request: GenerationRequest, cancel: CancellationToken) -> GenerationResult:
        from langchain_ollama import ChatOllama

        model = str(request.options.get("model") or self.settings["model"])
        llm = ChatOllama(
            model=model,
            num_ctx=int(self.settings["num_ctx"]),
            num_predict=int(self.settings["num_predict"]),
            temperature=float(self.settings["temperature"]),
        )
        cancel.raise_if_cancelled()
        logger.debug("Calling Ollama model %s (mode=%s)", model, request.options.get("mode"))
        response = await llm.ainvoke(self._messages(request))
        text = _message_text(response)
        if not text:
            raise ProviderError(f"Model {model} returned an empty response")
        return GenerationResult(output=text, text=text, metadata={"model": model})
