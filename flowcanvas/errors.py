from __future__ import annotations

import math

CANCELLED_MESSAGE = "execution cancelled"
UNEXPECTED_MESSAGE = "An unexpected error occurred."


class FlowCanvasError(Exception):
    """Base class for errors raised by the workflow engine."""


class UnknownNodeError(FlowCanvasError, KeyError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"Unknown node: {node_id}")
        self.node_id = node_id

    def __str__(self) -> str:
        return self.args[0]


class NodeValidationError(FlowCanvasError):
    """A required upstream connection or input is missing. Never retried."""

    def __init__(self, missing: list[str] | str) -> None:
        self.missing = [missing] if isinstance(missing, str) else list(missing)
        super().__init__(f"Missing required input: {', '.join(self.missing)}")


class RateLimitError(FlowCanvasError):
    """The node was re-triggered before its minimum interval elapsed."""

    def __init__(self, wait_seconds: float) -> None:
        self.wait_seconds = max(1, math.ceil(wait_seconds))
        super().__init__(f"Triggered too fast. Please retry in {self.wait_seconds}s.")


class ProviderError(FlowCanvasError):
    """A failure reported by a generation collaborator (network, quota, credentials)."""


class ExecutionCancelled(FlowCanvasError):
    def __init__(self, node_id: str | None = None) -> None:
        self.node_id = node_id
        super().__init__(CANCELLED_MESSAGE)


class StorageError(FlowCanvasError):
    """The blob store could not save or dereference a payload."""


class CycleDetectedError(FlowCanvasError):
    def __init__(self, node_ids: list[str]) -> None:
        self.node_ids = list(node_ids)
        super().__init__(f"Workflow graph has a cycle involving: {', '.join(self.node_ids)}")


def _message_of(exc: BaseException) -> str:
    return str(exc).lower()


def should_not_retry(exc: BaseException) -> bool:
    """Credential and request-shape errors fail the same way on every attempt."""
    if isinstance(exc, (NodeValidationError, RateLimitError, ExecutionCancelled)):
        return True
    message = _message_of(exc)
    if "unauthorized" in message or "api key" in message:
        return True
    return "invalid" in message or "bad request" in message


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    message = _message_of(exc)
    return any(word in message for word in ("network", "fetch", "timeout", "connection"))


def classify_error(exc: BaseException) -> str:
    """Map a provider failure onto the short message shown on the node."""
    message = _message_of(exc)
    if "quota" in message and "exceeded" in message:
        return "API quota exceeded. Please try again later."
    if is_network_error(exc):
        return "Network unreachable. Please check your connection."
    if "api key" in message or "unauthorized" in message:
        return "Invalid API credentials. Please check your API key."
    return str(exc) or UNEXPECTED_MESSAGE
