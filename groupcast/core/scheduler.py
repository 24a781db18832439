from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable
from groupcast.observability.logging import get_logger

log = get_logger("scheduler")

class PeriodicTask:
    """Runs ``func`` every ``interval_s`` seconds until stopped.

    A failing iteration is logged and the loop carries on.
    """
    def __init__(self, name: str, interval_s: float, func: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval_s = interval_s
        self.func = func
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        log.info("periodic_task_started", task=self.name, interval_s=self.interval_s)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                result = await self.func()
                log.debug("periodic_task_tick", task=self.name, result=result)
            except Exception as e:
                log.exception("periodic_task_failed", task=self.name, error=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=self.interval_s + 5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
        log.info("periodic_task_stopped", task=self.name)
