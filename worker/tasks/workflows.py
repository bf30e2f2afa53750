from __future__ import annotations

from typing import Any, Dict, Optional

from worker.broker import broker
from shared.logger import get_logger

logger = get_logger(__name__)


@broker.task
async def execute_deployed_workflow(
    workflow_id: str,
    input_data: Optional[Dict[str, Any]] = None,
    execution_id: Optional[str] = None,
    trigger: str = "api",
) -> Optional[str]:
    """Run the active deployment of a workflow; returns the run status."""
    logger.info("Executing deployed workflow via Taskiq", extra={"workflow_id": workflow_id})
    from api.deployments.services import get_deployed_state  # local import to avoid cycles
    from api.executions.services import run_workflow

    state = await get_deployed_state(workflow_id)
    if state is None:
        logger.warning(f"Workflow {workflow_id} has no deployed state", extra={"workflow_id": workflow_id})
        return None

    result = await run_workflow(
        workflow_id,
        state,
        input_data=input_data,
        trigger=trigger,
        execution_id=execution_id,
    )
    return result.status.value


__all__ = ["execute_deployed_workflow"]
