from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from .models import WorkflowEdge, WorkflowNode

MAX_HISTORY_SIZE = 20


@dataclass(slots=True)
class HistoryEntry:
    nodes: list[WorkflowNode] = field(default_factory=list)
    edges: list[WorkflowEdge] = field(default_factory=list)

    def copy(self) -> HistoryEntry:
        return HistoryEntry(
            nodes=[node.model_copy(deep=True) for node in self.nodes],
            edges=[edge.model_copy(deep=True) for edge in self.edges],
        )


class HistoryManager:
    """Bounded undo/redo stack of structural snapshots.

    Pushing after an undo discards the abandoned redo branch; the oldest
    entry is dropped once ``max_size`` is exceeded.
    """

    def __init__(self, max_size: int = MAX_HISTORY_SIZE) -> None:
        if max_size < 1:
            raise ValueError("history max_size must be at least 1")
        self.max_size = max_size
        self._entries: list[HistoryEntry] = []
        self._index = -1

    @property
    def index(self) -> int:
        return self._index

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def can_undo(self) -> bool:
        return self._index > 0

    @property
    def can_redo(self) -> bool:
        return self._index < len(self._entries) - 1

    def push(self, nodes: Sequence[WorkflowNode], edges: Sequence[WorkflowEdge]) -> None:
        entries = self._entries[: self._index + 1]
        entries.append(HistoryEntry(list(nodes), list(edges)).copy())
        if len(entries) > self.max_size:
            entries = entries[len(entries) - self.max_size :]
        self._entries = entries
        self._index = len(entries) - 1

    def undo(self) -> HistoryEntry | None:
        if not self.can_undo:
            return None
        self._index -= 1
        return self._entries[self._index].copy()

    def redo(self) -> HistoryEntry | None:
        if not self.can_redo:
            return None
        self._index += 1
        return self._entries[self._index].copy()

    def current(self) -> HistoryEntry | None:
        if self._index < 0:
            return None
        return self._entries[self._index].copy()

    def clear(self) -> None:
        self._entries = []
        self._index = -1
