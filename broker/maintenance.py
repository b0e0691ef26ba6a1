"""
Maintenance Scheduler — recurring background sweep over every queue.

Owned by MessageQueueSystem. Sleeps on the event loop between sweeps; a
failing sweep is logged and the schedule keeps running.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class MaintenanceScheduler:

    def __init__(self, sweep: Callable[[], Awaitable[Any]], interval_seconds: float = 60.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._sweep = sweep
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("maintenance_scheduler_started", interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("maintenance_sweep_error", error=str(e), exc_info=True)
