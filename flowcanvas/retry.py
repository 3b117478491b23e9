from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from logging import getLogger
from typing import Any, TypeVar

from .cancellation import CancellationToken
from .errors import ExecutionCancelled, should_not_retry

logger = getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, int, BaseException], None]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay slept after failed ``attempt`` (1-based)."""
        return min(self.initial_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


IMAGE_RETRY = RetryPolicy(max_attempts=3, initial_delay=1.0)
VIDEO_RETRY = RetryPolicy(max_attempts=2, initial_delay=2.0)


async def _race(awaitable: Awaitable[T], cancel: CancellationToken | None) -> T:
    task = asyncio.ensure_future(awaitable)
    if cancel is None:
        return await task
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if not task.done():
        task.cancel()
        raise ExecutionCancelled(cancel.node_id)
    return task.result()


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = IMAGE_RETRY,
    *,
    on_retry: RetryCallback | None = None,
    cancel: CancellationToken | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``fn()`` up to ``policy.max_attempts`` times with exponential backoff.

    A signalled ``cancel`` token aborts the in-flight attempt or the pending
    backoff immediately with ``ExecutionCancelled``; that does not count as
    a failed attempt. Errors that ``should_not_retry`` are re-raised at once.
    """
    last_error: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return await _race(fn(), cancel)
        except ExecutionCancelled:
            raise
        except Exception as exc:
            last_error = exc
            if should_not_retry(exc) or attempt == policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "Attempt %d/%d failed (%s); retrying in %.1fs",
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt, policy.max_attempts, exc)
            await _race(sleep(delay), cancel)
    # max_attempts < 1
    raise last_error or RuntimeError("retry policy allows no attempts")
