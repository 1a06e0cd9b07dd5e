from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable

from ..config import settings
from .errors import RunStoppedError
from .windows import WindowHierarchyTracker

logger = logging.getLogger(__name__)


class RecentLogHandler(logging.Handler):
    """Keeps the last few formatted log lines for the status endpoint."""

    def __init__(self, capacity: int | None = None) -> None:
        super().__init__()
        self.lines: deque[str] = deque(maxlen=capacity or settings.log_buffer_size)
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s", "%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def recent(self, limit: int | None = None) -> list[str]:
        lines = list(self.lines)
        return lines[-limit:] if limit else lines

    def clear(self) -> None:
        self.lines.clear()


class RunState:
    """Run-control flags, progress and the window registry for one run.

    Passed by reference to every component that needs to honor pause/stop.
    ``dom_lock`` is held while element registries are collected in a page, so
    a diagnostic listing never interleaves with a resolution search.
    """

    def __init__(
        self,
        windows: WindowHierarchyTracker | None = None,
        pause_poll_ms: int | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.windows = windows or WindowHierarchyTracker()
        self.pause_poll_ms = pause_poll_ms if pause_poll_ms is not None else settings.pause_poll_ms
        self._sleep = sleep
        self._clock = clock
        self.paused = False
        self.stopped = False
        self.running = False
        self.current_step_index = 0
        self.total_steps = 0
        self.dom_lock = asyncio.Lock()

    def reset(self, total_steps: int = 0) -> None:
        self.paused = False
        self.stopped = False
        self.running = True
        self.current_step_index = 0
        self.total_steps = total_steps
        self.dom_lock = asyncio.Lock()

    def pause(self) -> None:
        if self.running and not self.stopped:
            self.paused = True
            logger.info("run_paused step=%s", self.current_step_index)

    def resume(self) -> None:
        if self.paused:
            self.paused = False
            logger.info("run_resumed step=%s", self.current_step_index)

    def stop(self) -> None:
        self.stopped = True
        self.paused = False
        logger.info("run_stop_requested step=%s", self.current_step_index)

    async def checkpoint(self) -> None:
        """Block while paused; raise RunStoppedError once stop was requested."""
        while self.paused and not self.stopped:
            await self._sleep(self.pause_poll_ms / 1000)
        if self.stopped:
            raise RunStoppedError()

    async def sleep(self, ms: int) -> None:
        """Sleep in short slices so pause and stop are honored mid-wait."""
        end = self._clock() + ms / 1000
        while True:
            await self.checkpoint()
            remaining = end - self._clock()
            if remaining <= 0:
                return
            await self._sleep(min(remaining, self.pause_poll_ms / 1000))

    async def poll_until(
        self,
        predicate: Callable[[], Awaitable[bool]],
        timeout_ms: int,
        interval_ms: int,
    ) -> bool:
        end = self._clock() + timeout_ms / 1000
        while True:
            await self.checkpoint()
            if await predicate():
                return True
            if self._clock() >= end:
                return False
            await self.sleep(min(interval_ms, max(1, int((end - self._clock()) * 1000))))
