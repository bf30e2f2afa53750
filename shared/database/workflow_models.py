from enum import Enum
from tortoise import fields, models


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ExecutionLogStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    API = "api"
    WEBHOOK = "webhook"


class WorkflowSchedule(models.Model):
    """Recurring trigger configuration that starts workflow runs."""

    id = fields.CharField(max_length=64, primary_key=True)
    workflow_id = fields.CharField(max_length=64, db_index=True)
    block_id = fields.CharField(max_length=255, null=True)
    cron_expression = fields.CharField(max_length=255, null=True)
    timezone = fields.CharField(max_length=64, default="UTC")
    next_run_at = fields.DatetimeField(null=True)
    last_ran_at = fields.DatetimeField(null=True)
    last_failed_at = fields.DatetimeField(null=True)
    failed_count = fields.IntField(default=0)
    status = fields.CharEnumField(ScheduleStatus, max_length=20, default=ScheduleStatus.ACTIVE)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "workflow_schedules"
        indexes = (("status", "next_run_at"),)

    def __str__(self) -> str:
        return f"WorkflowSchedule<{self.id}:{self.workflow_id}>"


class WorkflowDeploymentVersion(models.Model):
    """One published configuration of a workflow."""

    id = fields.IntField(primary_key=True)
    workflow_id = fields.CharField(max_length=64, db_index=True)
    version = fields.IntField()
    state = fields.JSONField()
    is_active = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "workflow_deployment_versions"
        unique_together = (("workflow_id", "version"),)
        ordering = ("-created_at", "-id")

    def __str__(self) -> str:
        return f"WorkflowDeploymentVersion<{self.workflow_id} v{self.version}>"


class WorkflowExecutionSnapshot(models.Model):
    """Immutable capture of an execution state."""

    id = fields.CharField(max_length=64, primary_key=True)
    workflow_id = fields.CharField(max_length=64, db_index=True)
    run_id = fields.CharField(max_length=64, db_index=True)
    state_data = fields.JSONField()
    created_at = fields.DatetimeField()

    class Meta:
        table = "workflow_execution_snapshots"

    def __str__(self) -> str:
        return f"WorkflowExecutionSnapshot<{self.id}>"


class WorkflowExecutionLog(models.Model):
    """Execution metadata consumed by log viewers."""

    id = fields.IntField(primary_key=True)
    execution_id = fields.CharField(max_length=64, unique=True)
    workflow_id = fields.CharField(max_length=64, db_index=True)
    trigger = fields.CharEnumField(ExecutionTrigger, max_length=20, default=ExecutionTrigger.MANUAL)
    status = fields.CharEnumField(ExecutionLogStatus, max_length=20, default=ExecutionLogStatus.RUNNING)
    started_at = fields.DatetimeField()
    ended_at = fields.DatetimeField(null=True)
    total_duration_ms = fields.IntField(null=True)
    cost = fields.JSONField(null=True)
    error = fields.TextField(null=True)
    snapshot = fields.ForeignKeyField(
        "models.WorkflowExecutionSnapshot", related_name="logs", null=True
    )

    class Meta:
        table = "workflow_execution_logs"
        ordering = ("-started_at", "id")

    def __str__(self) -> str:
        return f"WorkflowExecutionLog<{self.execution_id}:{self.status}>"
