"""
Background job queue for side effects that must not touch the request path.

One worker task drains an asyncio.Queue. Each job runs inside its own error
boundary: an exception is logged and the worker moves on, so a failing job
can never reach the caller that submitted it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Callable[..., Awaitable[Any]]


class BackgroundQueue:
    def __init__(self, name: str = "background"):
        self.name = name
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self.failed = 0

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"{self.name}-worker")

    def start(self) -> None:
        """Start the worker now rather than on first submit."""
        self._ensure_worker()

    def submit(self, fn: Job, *args, **kwargs) -> None:
        """Queue a coroutine function call. Returns immediately."""
        self._ensure_worker()
        self._queue.put_nowait((fn, args, kwargs))

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker; jobs still queued are dropped."""
        if self._worker is None:
            return
        pending = self._queue.qsize() if self._queue else 0
        if pending:
            logger.warning("%s queue stopping with %d pending job(s)", self.name, pending)
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._queue = None

    async def _run(self) -> None:
        while True:
            fn, args, kwargs = await self._queue.get()
            try:
                await fn(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("%s job %s failed", self.name, getattr(fn, "__name__", fn))
            finally:
                self._queue.task_done()
