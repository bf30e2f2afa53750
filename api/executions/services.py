from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from uuid import uuid4

from api.deployments.services import get_deployed_state
from shared.database.workflow_models import (
    ExecutionLogStatus,
    ExecutionTrigger,
    WorkflowExecutionLog,
)
from shared.logger import get_logger
from workflow_core.engine import ExecutionEngine, ExecutionResult
from workflow_core.errors import ConfigurationError
from workflow_core.handlers import build_default_registry
from workflow_core.state import utcnow
from workflow_core.storage import TortoiseSnapshotStore

logger = get_logger(__name__)

Authorize = Callable[[Any, str], Union[bool, Awaitable[bool]]]


class ExecutionNotFoundError(LookupError):
    """Raised when no execution log exists for an execution id."""


class PermissionDeniedError(PermissionError):
    """Raised when the actor may not read the workflow an execution belongs to."""


@dataclass
class ExecutionLookup:
    execution_id: str
    workflow_id: str
    state_data: Optional[Dict[str, Any]]
    trigger: str
    status: str
    started_at: datetime
    ended_at: Optional[datetime]
    total_duration_ms: Optional[int]
    cost: Optional[Dict[str, Any]]
    error: Optional[str] = None


_engine: Optional[ExecutionEngine] = None


def get_engine() -> ExecutionEngine:
    """Process-wide engine backed by the Tortoise snapshot store."""
    global _engine
    if _engine is None:
        _engine = ExecutionEngine(
            build_default_registry(),
            TortoiseSnapshotStore(),
            workflow_loader=get_deployed_state,
        )
    return _engine


async def get_execution(
    execution_id: str,
    *,
    actor: Any = None,
    authorize: Optional[Authorize] = None,
) -> ExecutionLookup:
    """
    Resolve an execution id to its workflow, snapshot state and run metadata.

    ``authorize(actor, workflow_id)`` is consulted when given; a falsy answer
    raises PermissionDeniedError.
    """
    log = await WorkflowExecutionLog.get_or_none(execution_id=execution_id).prefetch_related("snapshot")
    if log is None:
        raise ExecutionNotFoundError(f"Execution {execution_id} not found")

    if authorize is not None:
        allowed = authorize(actor, log.workflow_id)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        if not allowed:
            raise PermissionDeniedError(f"Access to workflow {log.workflow_id} denied")

    snapshot = log.snapshot
    return ExecutionLookup(
        execution_id=log.execution_id,
        workflow_id=log.workflow_id,
        state_data=snapshot.state_data if snapshot is not None else None,
        trigger=log.trigger.value,
        status=log.status.value,
        started_at=log.started_at,
        ended_at=log.ended_at,
        total_duration_ms=log.total_duration_ms,
        cost=log.cost,
        error=log.error,
    )


async def run_workflow(
    workflow_id: str,
    schema: Any,
    *,
    input_data: Optional[Dict[str, Any]] = None,
    trigger: str = ExecutionTrigger.MANUAL.value,
    execution_id: Optional[str] = None,
    engine: Optional[ExecutionEngine] = None,
) -> ExecutionResult:
    """Run a workflow and record its execution log."""
    engine = engine or get_engine()
    execution_id = execution_id or str(uuid4())

    log = await WorkflowExecutionLog.create(
        execution_id=execution_id,
        workflow_id=workflow_id,
        trigger=ExecutionTrigger(trigger),
        status=ExecutionLogStatus.RUNNING,
        started_at=utcnow(),
    )

    try:
        result = await engine.run(
            schema,
            workflow_id=workflow_id,
            input_data=input_data,
            run_id=execution_id,
            trigger=trigger,
        )
    except Exception as exc:
        if not isinstance(exc, ConfigurationError):
            logger.exception(
                f"Execution {execution_id} of workflow {workflow_id} raised {type(exc).__name__}",
                extra={"execution_id": execution_id, "trigger": trigger},
            )
        await WorkflowExecutionLog.filter(id=log.id).update(
            status=ExecutionLogStatus.FAILED,
            ended_at=utcnow(),
            error=str(exc) if isinstance(exc, ConfigurationError) else f"{type(exc).__name__}: {exc}",
        )
        raise

    await WorkflowExecutionLog.filter(id=log.id).update(
        status=ExecutionLogStatus(result.status.value),
        started_at=result.started_at,
        ended_at=result.ended_at,
        total_duration_ms=result.duration_ms,
        cost=result.cost,
        error=result.error,
        snapshot_id=result.snapshot_id,
    )
    logger.info(
        f"Execution {execution_id} of workflow {workflow_id} finished: {result.status.value}",
        extra={"execution_id": execution_id, "trigger": trigger},
    )
    return result


__all__ = [
    "ExecutionLookup",
    "ExecutionNotFoundError",
    "PermissionDeniedError",
    "get_engine",
    "get_execution",
    "run_workflow",
]
