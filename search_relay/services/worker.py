"""
Background worker - bounded asyncio queue consumed by one dedicated task.

Replaces fire-and-forget background calls: every handed-off item is processed
by a long-lived consumer, and failures are logged and counted instead of
disappearing with an orphaned task.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from opentelemetry import trace

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundWorker(Generic[T]):
    """Runs `handler` for each queued item, one at a time, in arrival order."""

    def __init__(self, name: str, handler: Callable[[T], Awaitable[None]], maxsize: int = 100):
        self.name = name
        self._handler = handler
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"worker:{self.name}")
        logger.info(f"Worker {self.name} started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Worker {self.name} stopped ({self.processed} processed, {self.failed} failed)")

    def enqueue(self, item: T) -> None:
        """
        Hand an item to the worker.

        Raises:
            asyncio.QueueFull: If the backlog is at capacity.
        """
        self._queue.put_nowait(item)

    async def drain(self) -> None:
        """Wait until every queued item has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        tracer = trace.get_tracer(__name__)
        while True:
            item = await self._queue.get()
            try:
                with tracer.start_as_current_span(f"worker.{self.name}"):
                    await self._handler(item)
                self.processed += 1
            except Exception as e:
                self.failed += 1
                logger.error(f"Worker {self.name} failed to process item: {e}", exc_info=True)
            finally:
                self._queue.task_done()
