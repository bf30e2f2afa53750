from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from api.schedules.models import SchedulePayload
from shared.config import config
from shared.logger import get_logger

logger = get_logger(__name__)

ScheduleJob = Callable[[SchedulePayload], Awaitable[Any]]


class ScheduleJobSupervisor:
    """
    In-process worker pool for the direct execution strategy.

    ``submit`` returns as soon as the job is queued and waits while the
    queue is full. Workers record whether each run completed or failed; a
    launched run is never cancelled. When used from a new event loop the
    queued jobs move to a fresh queue served by new workers.
    """

    def __init__(
        self,
        job: Optional[ScheduleJob] = None,
        *,
        concurrency: Optional[int] = None,
        max_pending: Optional[int] = None,
    ) -> None:
        self._job = job
        self.concurrency = concurrency or config.schedule_worker_concurrency
        self.max_pending = max_pending or config.schedule_worker_queue_size
        self._queue: asyncio.Queue[SchedulePayload] = asyncio.Queue(maxsize=self.max_pending)
        self._workers: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _bind(self, loop: asyncio.AbstractEventLoop) -> None:
        # Workers and waiters of another loop never run again
        stale = self._queue
        self._queue = asyncio.Queue(maxsize=self.max_pending)
        while not stale.empty():
            self._queue.put_nowait(stale.get_nowait())
        self._workers = []
        self._loop = loop

    def _ensure_workers(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._bind(loop)
        self._workers = [task for task in self._workers if not task.done()]
        while len(self._workers) < self.concurrency:
            self._workers.append(loop.create_task(self._worker()))

    async def submit(self, payload: SchedulePayload) -> None:
        self._ensure_workers()
        await self._queue.put(payload)

    async def _run_job(self, payload: SchedulePayload) -> Any:
        if self._job is not None:
            return await self._job(payload)
        from api.schedules.services import execute_schedule_job  # local import to avoid cycles

        return await execute_schedule_job(payload)

    async def _worker(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                result = await self._run_job(payload)
            except Exception:
                self.failed += 1
                logger.exception(
                    "Scheduled workflow job failed",
                    extra={"schedule_id": payload.schedule_id, "workflow_id": payload.workflow_id},
                )
            else:
                if result is not None and getattr(result, "succeeded", True):
                    self.completed += 1
                else:
                    self.failed += 1
                logger.info(
                    f"Scheduled workflow job finished for schedule {payload.schedule_id}",
                    extra={"schedule_id": payload.schedule_id, "workflow_id": payload.workflow_id},
                )
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        await self._queue.join()

    async def shutdown(self) -> None:
        await self.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []


__all__ = ["ScheduleJob", "ScheduleJobSupervisor"]
