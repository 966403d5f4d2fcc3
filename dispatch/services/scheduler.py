"""
Periodic task scheduler

Owns named periodic tasks (predictor cycle, pattern deep-scan, prediction
sweep, state snapshot). Each task runs its coroutine function on a fixed
interval after an optional initial delay. A failing run is logged and the
loop keeps going; cancel_all() stops everything as a unit.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class PeriodicScheduler:

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self.runs: Dict[str, int] = {}
        self.failures: Dict[str, int] = {}

    @property
    def names(self):
        return sorted(self._tasks)

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def schedule(
        self,
        name: str,
        func: Callable[[], Awaitable[None]],
        interval: float,
        initial_delay: Optional[float] = None,
    ) -> asyncio.Task:
        """
        Start func every `interval` seconds.

        Args:
            name: Unique task name, e.g. 'predictor:nyc'
            func: Zero-argument coroutine function
            interval: Seconds between runs
            initial_delay: Seconds before first run (defaults to interval)
        """
        if self.is_running(name):
            raise ValueError(f"Periodic task already scheduled: {name}")
        delay = interval if initial_delay is None else initial_delay
        task = asyncio.create_task(self._loop(name, func, interval, delay), name=name)
        self._tasks[name] = task
        self.runs.setdefault(name, 0)
        self.failures.setdefault(name, 0)
        return task

    async def _loop(self, name, func, interval, delay):
        await asyncio.sleep(delay)
        while True:
            try:
                await func()
                self.runs[name] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures[name] += 1
                logger.error(f"[SCHEDULER] {name} failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def cancel_all(self) -> None:
        """Cancel every task and wait for them to finish"""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"[SCHEDULER] Cancelled {len(tasks)} periodic tasks")
