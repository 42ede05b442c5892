"""Bounded-concurrency execution of independent generation calls.

Each item in a batch touches only its own row, so calls run concurrently
under a semaphore. One failed or timed-out call never aborts the batch;
it is reported in that item's ``CallOutcome``. Cancelling the awaiting
task cancels every in-flight call and no queued call starts afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from app.core.exceptions import OntologyError
from app.generation.types import CallOutcome, CallStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GenerationPool:
    """Runs ``worker(item)`` for every item with at most ``max_concurrent`` in flight."""

    def __init__(self, max_concurrent: int = 5, call_timeout: float | None = 60.0):
        self.max_concurrent = max(1, max_concurrent)
        self.call_timeout = call_timeout

    async def run(
        self,
        items: Iterable[Any],
        worker: Callable[[Any], Awaitable[T]],
        timeout: float | None = None,
    ) -> list[CallOutcome[T]]:
        """Execute the batch and return outcomes in input order.

        ``timeout`` overrides the per-call timeout; ``worker`` may itself
        make several calls (e.g. a retry loop) and then handles its own
        timeouts, in which case pass ``timeout=0`` to disable the wrapper.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent)
        limit = self.call_timeout if timeout is None else (timeout or None)

        async def _one(item: Any) -> CallOutcome[T]:
            async with semaphore:
                try:
                    if limit:
                        value = await asyncio.wait_for(worker(item), timeout=limit)
                    else:
                        value = await worker(item)
                    return CallOutcome(item=item, status=CallStatus.SUCCESS, value=value)
                except asyncio.TimeoutError:
                    logger.warning("Generation call timed out after %ss", limit)
                    return CallOutcome(item=item, status=CallStatus.TIMEOUT, error=f"timed out after {limit}s")
                except OntologyError as exc:
                    return CallOutcome(item=item, status=CallStatus.FAILED, error=exc.message)

        tasks = [asyncio.ensure_future(_one(item)) for item in items]
        if not tasks:
            return []
        try:
            return list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
