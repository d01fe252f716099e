"""
Cancellable timers on the asyncio loop.

A ``TimerHandle`` owns at most one running schedule. Starting it again
replaces the previous schedule; ``cancel()`` is safe from inside the
timer's own callback.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger()

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


class TimerHandle:
    """Structured start/cancel handle for one-shot or periodic work."""

    def __init__(self, name: str):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._running = False

    @property
    def active(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start_once(self, delay_s: float, callback: TimerCallback) -> "TimerHandle":
        gen = self._restart()
        self._task = asyncio.get_running_loop().create_task(
            self._run_once(gen, delay_s, callback), name=f"timer:{self.name}"
        )
        return self

    def start_periodic(
        self,
        interval_s: float,
        callback: TimerCallback,
        immediate: bool = False,
    ) -> "TimerHandle":
        gen = self._restart()
        self._task = asyncio.get_running_loop().create_task(
            self._run_periodic(gen, interval_s, callback, immediate), name=f"timer:{self.name}"
        )
        return self

    def cancel(self) -> None:
        self._generation += 1
        self._running = False
        task = self._task
        if task is None:
            return
        self._task = None
        # Cancelling ourselves mid-callback would interrupt the callback's own awaits
        if task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def wait(self) -> None:
        """Wait until the current schedule finishes or is cancelled."""
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def _restart(self) -> int:
        self.cancel()
        self._running = True
        return self._generation

    def _live(self, gen: int) -> bool:
        return gen == self._generation

    async def _run_once(self, gen: int, delay_s: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay_s)
        if not self._live(gen):
            return
        await self._invoke(callback)
        if self._live(gen):
            self._running = False

    async def _run_periodic(
        self,
        gen: int,
        interval_s: float,
        callback: TimerCallback,
        immediate: bool,
    ) -> None:
        if not immediate:
            await asyncio.sleep(interval_s)
        while self._live(gen):
            await self._invoke(callback)
            if not self._live(gen):
                break
            await asyncio.sleep(interval_s)

    async def _invoke(self, callback: TimerCallback) -> None:
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Timer callback failed", timer=self.name, error=str(e), exc_info=True)
