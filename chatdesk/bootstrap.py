"""
One-time application startup.

Bootstrap wraps the async init routine in a once-cell: the first caller
starts it, concurrent callers await the same task, and everyone gets the same
result. If init raises, the cell is cleared so a later caller can retry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class Bootstrap:
    def __init__(self, init: Callable[[], Awaitable[Any]]):
        self._init = init
        self._task: asyncio.Task | None = None

    @property
    def is_ready(self) -> bool:
        return (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.exception() is None
        )

    async def ready(self) -> Any:
        """Run init once and return its result."""
        if self._task is None:
            logger.debug("Bootstrap starting")
            self._task = asyncio.ensure_future(self._init())
        task = self._task
        try:
            # shield: a cancelled waiter must not cancel init for the others
            return await asyncio.shield(task)
        except Exception:
            if self._task is task:
                logger.warning("Bootstrap failed; next caller will retry")
                self._task = None
            raise
