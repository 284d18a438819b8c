"""Fixed-interval background driver for cleanup sweeps, ticks and collection."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger(__name__)

PeriodicCallable = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds on the running event loop.

    A failing run is logged and the schedule continues. ``stop()`` waits for a
    run in progress to finish; it never cancels one.
    """

    def __init__(self, name: str, interval: float, func: PeriodicCallable) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._func = func
        self._task: asyncio.Task | None = None
        self._stopping: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._stopping), name=self.name
        )
        logger.debug("Started periodic task %s every %ss", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        self._stopping.set()
        await task
        logger.debug("Stopped periodic task %s", self.name)

    async def run_once(self) -> Any:
        result = self._func()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run(self, stopping: asyncio.Event) -> None:
        while not stopping.is_set():
            try:
                await asyncio.wait_for(stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if stopping.is_set():
                break
            try:
                await self.run_once()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
