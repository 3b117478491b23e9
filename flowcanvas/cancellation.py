from __future__ import annotations

import asyncio

from .errors import ExecutionCancelled


class CancellationToken:
    """Cooperative cancellation signal shared between the executor and a provider call."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelled(self.node_id)

    def __repr__(self) -> str:
        return f"CancellationToken(node_id={self.node_id!r}, cancelled={self.cancelled})"
