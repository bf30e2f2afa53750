"""
Nested workflow block: runs another workflow as a single step.
"""
from __future__ import annotations

from typing import Any, Dict

from workflow_core.context import ExecutionContext
from workflow_core.errors import HandlerExecutionError
from workflow_core.schema import BlockType, WorkflowBlockConfig, parse_workflow_state

from .base import BlockHandler, BlockInputs


class WorkflowHandler(BlockHandler):
    block_type = BlockType.WORKFLOW

    async def execute(
        self, context: ExecutionContext, config: WorkflowBlockConfig, inputs: BlockInputs
    ) -> Dict[str, Any]:
        engine = context.engine
        if engine is None or engine.workflow_loader is None:
            raise HandlerExecutionError("Workflow blocks require an engine with a workflow loader")

        child_depth = context.depth + 1
        if child_depth > engine.settings.max_workflow_depth:
            raise HandlerExecutionError(
                f"Maximum workflow nesting depth ({engine.settings.max_workflow_depth}) exceeded"
            )

        state = await engine.workflow_loader(config.workflow_id)
        if state is None:
            raise HandlerExecutionError(f"Workflow '{config.workflow_id}' has no deployed state")
        try:
            child_schema = parse_workflow_state(state)
        except ValueError as exc:
            raise HandlerExecutionError(f"Workflow '{config.workflow_id}' state is invalid: {exc}") from exc

        context.logger.info(f"Running child workflow {config.workflow_id} at depth {child_depth}")
        result = await engine.run(
            child_schema,
            workflow_id=config.workflow_id,
            input_data=dict(config.input),
            trigger="workflow",
            depth=child_depth,
        )
        context.add_cost(result.cost)

        if not result.succeeded:
            raise HandlerExecutionError(
                f"Child workflow '{config.workflow_id}' {result.status.value}: {result.error or 'no error message'}"
            )

        output: Dict[str, Any] = {
            "output": result.output,
            "run_id": result.run_id,
            "status": result.status.value,
        }
        return output


__all__ = ["WorkflowHandler"]
