from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from croniter import croniter
from tortoise.expressions import F

from api.deployments.services import get_deployed_state
from api.executions.services import run_workflow
from api.schedules.models import SchedulePayload
from shared.config import config
from shared.database.workflow_models import ExecutionTrigger, ScheduleStatus, WorkflowSchedule
from shared.logger import get_logger
from workflow_core.engine import ExecutionResult

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_next_run_at(
    cron_expression: Optional[str],
    now: datetime,
    *,
    tz: str = "UTC",
    default_interval_seconds: Optional[int] = None,
) -> datetime:
    """
    Next occurrence strictly after ``now``.

    Cron expressions are evaluated in the schedule's timezone; schedules
    without one repeat every ``default_interval_seconds``.

    Raises:
        ValueError: If the cron expression or timezone is invalid
    """
    if not cron_expression:
        interval = default_interval_seconds or config.schedule_default_interval_seconds
        return now + timedelta(seconds=interval)

    try:
        zone = ZoneInfo(tz or "UTC")
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz}") from exc
    try:
        cron = croniter(cron_expression, now.astimezone(zone))
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Invalid cron expression: {cron_expression}") from exc
    next_run = cron.get_next(datetime)
    return next_run.astimezone(timezone.utc)


async def create_schedule(
    workflow_id: str,
    *,
    cron_expression: Optional[str] = None,
    block_id: Optional[str] = None,
    tz: str = "UTC",
    next_run_at: Optional[datetime] = None,
) -> WorkflowSchedule:
    if next_run_at is None:
        next_run_at = calculate_next_run_at(cron_expression, _utcnow(), tz=tz)
    return await WorkflowSchedule.create(
        id=str(uuid4()),
        workflow_id=workflow_id,
        block_id=block_id,
        cron_expression=cron_expression,
        timezone=tz,
        next_run_at=next_run_at,
    )


class TortoiseScheduleRepository:
    """Due-schedule queries and claims against ``workflow_schedules``."""

    async def list_due(self, now: datetime, *, limit: Optional[int] = None) -> List[WorkflowSchedule]:
        queryset = (
            WorkflowSchedule.filter(next_run_at__lte=now)
            .exclude(status=ScheduleStatus.DISABLED)
            .order_by("next_run_at")
        )
        if limit:
            queryset = queryset.limit(limit)
        return await queryset

    async def claim(self, schedule: WorkflowSchedule, *, now: datetime, next_run_at: datetime) -> bool:
        """
        Advance the schedule past this run.

        The update only matches while ``next_run_at`` still holds the value
        that made the schedule due, so a second dispatcher claims nothing.
        """
        updated = await WorkflowSchedule.filter(
            id=schedule.id,
            next_run_at=schedule.next_run_at,
        ).update(next_run_at=next_run_at, last_ran_at=now)
        return updated == 1

    async def release(self, schedule: WorkflowSchedule, *, claimed_next_run_at: datetime) -> bool:
        """
        Undo a claim whose run never started, so the next tick finds the schedule due again.

        ``schedule`` is the instance read before the claim. Nothing changes if
        the schedule moved on since the claim.
        """
        updated = await WorkflowSchedule.filter(
            id=schedule.id,
            next_run_at=claimed_next_run_at,
        ).update(next_run_at=schedule.next_run_at, last_ran_at=schedule.last_ran_at)
        return updated == 1


async def record_schedule_success(schedule_id: str) -> None:
    await WorkflowSchedule.filter(id=schedule_id).update(failed_count=0)


async def record_schedule_failure(
    schedule_id: str,
    *,
    now: Optional[datetime] = None,
    max_failures: Optional[int] = None,
) -> bool:
    """
    Count a failed scheduled run. Returns True when the schedule got disabled.
    """
    now = now or _utcnow()
    max_failures = max_failures or config.schedule_max_consecutive_failures
    await WorkflowSchedule.filter(id=schedule_id).update(
        failed_count=F("failed_count") + 1,
        last_failed_at=now,
    )
    disabled = await WorkflowSchedule.filter(
        id=schedule_id,
        failed_count__gte=max_failures,
        status=ScheduleStatus.ACTIVE,
    ).update(status=ScheduleStatus.DISABLED)
    if disabled:
        logger.warning(
            f"Schedule {schedule_id} disabled after {max_failures} consecutive failures",
            extra={"schedule_id": schedule_id},
        )
    return bool(disabled)


def _schedule_input(payload: SchedulePayload) -> Dict[str, Any]:
    return {
        "schedule_id": payload.schedule_id,
        "block_id": payload.block_id,
        "scheduled_at": payload.now.isoformat(),
        "last_ran_at": payload.last_ran_at.isoformat() if payload.last_ran_at else None,
    }


async def execute_schedule_job(payload: SchedulePayload) -> Optional[ExecutionResult]:
    """
    Run the deployed state of a scheduled workflow and record the outcome on the schedule.

    Returns None when the workflow has no deployed state.
    """
    state = await get_deployed_state(payload.workflow_id)
    if state is None:
        logger.warning(
            f"Workflow {payload.workflow_id} has no deployed state; schedule run skipped",
            extra={"schedule_id": payload.schedule_id},
        )
        await record_schedule_failure(payload.schedule_id)
        return None

    try:
        result = await run_workflow(
            payload.workflow_id,
            state,
            input_data=_schedule_input(payload),
            trigger=ExecutionTrigger.SCHEDULE.value,
        )
    except Exception:
        await record_schedule_failure(payload.schedule_id)
        raise

    if result.succeeded:
        await record_schedule_success(payload.schedule_id)
    else:
        await record_schedule_failure(payload.schedule_id)
    return result


__all__ = [
    "TortoiseScheduleRepository",
    "calculate_next_run_at",
    "create_schedule",
    "execute_schedule_job",
    "record_schedule_failure",
    "record_schedule_success",
]
