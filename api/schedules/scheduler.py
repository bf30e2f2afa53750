from __future__ import annotations

import asyncio
from typing import Optional

from api.schedules.dispatcher import ScheduleDispatcher
from shared.logger import get_logger

logger = get_logger(__name__)


class ScheduleDispatchScheduler:
    """Background loop that periodically dispatches due schedules."""

    def __init__(
        self,
        *,
        interval_seconds: int = 60,
        dispatcher: Optional[ScheduleDispatcher] = None,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.dispatcher = dispatcher or ScheduleDispatcher()
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Schedule dispatcher started", extra={"strategy": self.dispatcher.strategy})

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Schedule dispatcher stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.dispatcher.dispatch_due()
            except Exception:
                logger.exception("Schedule dispatch tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["ScheduleDispatchScheduler"]
