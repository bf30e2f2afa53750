from __future__ import annotations

from worker.broker import broker
from shared.logger import get_logger

logger = get_logger(__name__)


@broker.task(task_name="schedule-execution")
async def execute_schedule(payload: str) -> None:
    """Run one due schedule handed off by the dispatcher."""
    from api.schedules.models import SchedulePayload  # local import to avoid cycles
    from api.schedules.services import execute_schedule_job

    schedule_payload = SchedulePayload.from_json(payload)
    logger.info(
        "Executing scheduled workflow via Taskiq",
        extra={"schedule_id": schedule_payload.schedule_id, "workflow_id": schedule_payload.workflow_id},
    )
    await execute_schedule_job(schedule_payload)


__all__ = ["execute_schedule"]
