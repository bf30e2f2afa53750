from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from shared.database.workflow_models import WorkflowSchedule


class SchedulePayload(BaseModel):
    """Message handed to the task queue (or the in-process supervisor) for one due schedule."""

    model_config = ConfigDict(frozen=True)

    schedule_id: str
    workflow_id: str
    block_id: Optional[str] = None
    cron_expression: Optional[str] = None
    last_ran_at: Optional[datetime] = None
    failed_count: int = Field(default=0, ge=0)
    now: datetime

    @classmethod
    def from_schedule(cls, schedule: WorkflowSchedule, now: datetime) -> "SchedulePayload":
        return cls(
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            block_id=schedule.block_id,
            cron_expression=schedule.cron_expression,
            last_ran_at=schedule.last_ran_at,
            failed_count=schedule.failed_count,
            now=now,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: Union[str, bytes, Dict[str, Any]]) -> "SchedulePayload":
        if isinstance(raw, dict):
            return cls.model_validate(raw)
        return cls.model_validate_json(raw)


__all__ = ["SchedulePayload"]
