#!/usr/bin/env python3
"""
Shared cancellation context.

One Context exists per run. Cancellation is monotone: once cancel() has been
called the context stays cancelled, and every blocking helper here returns
promptly with ContextCancelled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional

from .errors import ContextCancelled

logger = logging.getLogger(__name__)


class Context:
    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "context canceled") -> None:
        if self._cancelled.is_set():
            return
        self._reason = reason
        logger.debug(f"Context cancelled: {reason}")
        self._cancelled.set()

    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def err(self) -> Optional[ContextCancelled]:
        """ContextCancelled if cancelled, else None."""
        if not self._cancelled.is_set():
            return None
        return ContextCancelled()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    async def done(self) -> None:
        """Block until the context is cancelled."""
        await self._cancelled.wait()

    async def wait_for(self, awaitable: Awaitable[Any]) -> Any:
        """Await awaitable, or raise ContextCancelled if cancelled first."""
        if self.cancelled():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ContextCancelled()

        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            watcher.cancel()

        if work.done():
            return work.result()
        work.cancel()
        raise ContextCancelled()

    async def sleep(self, seconds: float) -> None:
        """Sleep, raising ContextCancelled if cancelled meanwhile."""
        await self.wait_for(asyncio.sleep(seconds))
