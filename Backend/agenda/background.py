"""
Detached, best-effort background work.

Side effects that must never delay or fail a booking response (the
WhatsApp confirmation, the fidelity-cycle re-check) run here. Each task is
bounded by a timeout, and failures are logged, never raised. The runner
keeps a strong reference to every live task so none is garbage-collected
mid-flight; the application drains it on shutdown.
"""

import asyncio
import logging
from typing import Awaitable, Optional

from fastapi import Request


logger = logging.getLogger(__name__)


class BackgroundRunner:
    def __init__(self, timeout_seconds: float = 15.0):
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it. Returns the wrapping task."""
        task = asyncio.create_task(self._run(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Awaitable, name: str) -> bool:
        try:
            await asyncio.wait_for(coro, timeout=self.timeout_seconds)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Background task '{name}' timed out after {self.timeout_seconds}s")
        except asyncio.CancelledError:
            logger.info(f"Background task '{name}' cancelled")
            raise
        except Exception:
            logger.exception(f"Background task '{name}' failed")
        return False

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks, giving up after ``timeout`` seconds."""
        if not self._tasks:
            return
        logger.info(f"Draining {len(self._tasks)} background task(s)")
        await asyncio.wait(set(self._tasks), timeout=timeout)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


def get_background_runner(request: Request) -> BackgroundRunner:
    """FastAPI dependency returning the application's runner."""
    return request.app.state.background
