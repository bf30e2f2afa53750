from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Literal, Optional

from api.schedules.jobs import ScheduleJobSupervisor
from api.schedules.models import SchedulePayload
from api.schedules.services import TortoiseScheduleRepository, calculate_next_run_at
from shared.config import WorkflowConfig, config as default_config
from shared.database.workflow_models import WorkflowSchedule
from shared.logger import get_logger
from workflow_core.errors import DispatchError

logger = get_logger(__name__)

ExecutionStrategy = Literal["queue", "direct"]
QueueDispatch = Callable[[SchedulePayload], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def enqueue_schedule(payload: SchedulePayload) -> None:
    """Hand a due schedule to the durable task queue."""
    from worker.tasks.schedules import execute_schedule  # local import to avoid cycles

    await execute_schedule.kiq(payload.to_json())


@dataclass
class DispatchResult:
    executed_count: int
    failed_dispatches: List[str] = field(default_factory=list)


class ScheduleDispatcher:
    """
    Selects due schedules and starts their runs.

    Every due schedule is attempted; one failing hand-off never stops the
    others. ``executed_count`` is the number attempted, not the number that
    will eventually succeed.
    """

    def __init__(
        self,
        repository: Optional[TortoiseScheduleRepository] = None,
        strategy: Optional[ExecutionStrategy] = None,
        *,
        queue_dispatch: Optional[QueueDispatch] = None,
        supervisor: Optional[ScheduleJobSupervisor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        settings: Optional[WorkflowConfig] = None,
    ) -> None:
        self.settings = settings or default_config
        self.repository = repository or TortoiseScheduleRepository()
        self.strategy: ExecutionStrategy = strategy or self.settings.schedule_execution_strategy
        self.queue_dispatch = queue_dispatch or enqueue_schedule
        self.supervisor = supervisor
        if self.supervisor is None and self.strategy == "direct":
            self.supervisor = ScheduleJobSupervisor()
        self.clock = clock or _utcnow

    async def dispatch_due(self, now: Optional[datetime] = None) -> DispatchResult:
        now = now or self.clock()
        due = await self.repository.list_due(now, limit=self.settings.schedule_max_batch_size)
        if not due:
            return DispatchResult(executed_count=0)

        outcomes = await asyncio.gather(
            *(self._dispatch_one(schedule, now) for schedule in due),
            return_exceptions=True,
        )

        failed: List[str] = []
        for schedule, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                failed.append(schedule.id)
                logger.error(
                    f"Failed to dispatch schedule {schedule.id}: {outcome}",
                    extra={"schedule_id": schedule.id, "workflow_id": schedule.workflow_id},
                )

        logger.info(
            f"Dispatched {len(due)} due schedules via '{self.strategy}' ({len(failed)} failed)",
        )
        return DispatchResult(executed_count=len(due), failed_dispatches=failed)

    async def _dispatch_one(self, schedule: WorkflowSchedule, now: datetime) -> bool:
        payload = SchedulePayload.from_schedule(schedule, now)
        next_run_at = calculate_next_run_at(
            schedule.cron_expression,
            now,
            tz=schedule.timezone,
            default_interval_seconds=self.settings.schedule_default_interval_seconds,
        )

        claimed = await self.repository.claim(schedule, now=now, next_run_at=next_run_at)
        if not claimed:
            logger.info(
                f"Schedule {schedule.id} was claimed by another dispatcher",
                extra={"schedule_id": schedule.id},
            )
            return False

        try:
            if self.strategy == "queue":
                await self.queue_dispatch(payload)
            else:
                await self.supervisor.submit(payload)
        except Exception as exc:
            released = await self.repository.release(schedule, claimed_next_run_at=next_run_at)
            if not released:
                logger.warning(
                    f"Could not release claim on schedule {schedule.id}",
                    extra={"schedule_id": schedule.id},
                )
            raise DispatchError(f"Could not hand off schedule {schedule.id}: {exc}") from exc
        return True


__all__ = ["DispatchResult", "ExecutionStrategy", "ScheduleDispatcher", "enqueue_schedule"]
