"""
Handlers for blocks that only shape data or pick a branch.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from workflow_core.code_executor import CodeExecutionError, CodeExecutor
from workflow_core.context import ExecutionContext
from workflow_core.errors import HandlerExecutionError
from workflow_core.schema import (
    BlockType,
    ConditionConfig,
    FunctionConfig,
    GenericConfig,
    ResponseConfig,
    RouterConfig,
    TriggerConfig,
)

from .base import BlockHandler, BlockInputs


def build_code_namespace(context: ExecutionContext, inputs: BlockInputs) -> Dict[str, Any]:
    """Names visible to function code and condition/router expressions."""
    variables = context.variables()
    namespace = {key: value for key, value in variables.items() if key.isidentifier()}
    namespace["inputs"] = dict(inputs)
    namespace["variables"] = variables
    return namespace


class TriggerHandler(BlockHandler):
    """Entry block: emits the run input."""

    block_type = BlockType.TRIGGER

    async def execute(self, context: ExecutionContext, config: TriggerConfig, inputs: BlockInputs) -> Dict[str, Any]:
        data = dict(context.input_data)
        if config.input_fields:
            data = {name: data.get(name) for name in config.input_fields}
        output = {"input": data}
        output.update(data)
        return output


class GenericHandler(BlockHandler):
    block_type = BlockType.GENERIC

    async def execute(self, context: ExecutionContext, config: GenericConfig, inputs: BlockInputs) -> Dict[str, Any]:
        values = config.model_dump()
        return {"output": values, **values}


class ResponseHandler(BlockHandler):
    """Builds the payload returned to whoever started the run."""

    block_type = BlockType.RESPONSE

    async def execute(self, context: ExecutionContext, config: ResponseConfig, inputs: BlockInputs) -> Dict[str, Any]:
        return {"data": config.data, "status": config.status, "headers": dict(config.headers)}


class FunctionHandler(BlockHandler):
    """Runs user code; whatever it assigns to ``_result`` becomes the output."""

    block_type = BlockType.FUNCTION
    template_exempt_fields = frozenset({"code"})

    def __init__(self, executor: Optional[CodeExecutor] = None) -> None:
        self.executor = executor or CodeExecutor()

    async def execute(self, context: ExecutionContext, config: FunctionConfig, inputs: BlockInputs) -> Dict[str, Any]:
        try:
            result = await self.executor.execute(
                config.code,
                build_code_namespace(context, inputs),
                timeout_seconds=config.timeout_seconds,
            )
        except CodeExecutionError as exc:
            raise HandlerExecutionError(f"Function block '{context.identity}' failed: {exc}") from exc

        output = result["output"]
        block_output: Dict[str, Any] = {"output": output}
        if isinstance(output, dict):
            block_output.update(output)
        return block_output


class ConditionHandler(BlockHandler):
    """Evaluates cases in order and selects the first truthy one."""

    block_type = BlockType.CONDITION
    template_exempt_fields = frozenset({"conditions"})

    def __init__(self, executor: Optional[CodeExecutor] = None) -> None:
        self.executor = executor or CodeExecutor()

    async def execute(self, context: ExecutionContext, config: ConditionConfig, inputs: BlockInputs) -> Dict[str, Any]:
        namespace = build_code_namespace(context, inputs)
        for case in config.conditions:
            try:
                value = await self.executor.evaluate(case.expression, namespace)
            except CodeExecutionError as exc:
                raise HandlerExecutionError(f"Condition '{case.id}' evaluation error: {exc}") from exc
            if value:
                context.logger.debug(f"Condition case '{case.id}' matched")
                return {"output": case.id, "selected_branch": case.id, "condition_result": True}

        return {
            "output": config.else_branch,
            "selected_branch": config.else_branch,
            "condition_result": False,
        }


class RouterHandler(BlockHandler):
    """Selects one outgoing route by label."""

    block_type = BlockType.ROUTER
    template_exempt_fields = frozenset({"expression"})

    def __init__(self, executor: Optional[CodeExecutor] = None) -> None:
        self.executor = executor or CodeExecutor()

    async def execute(self, context: ExecutionContext, config: RouterConfig, inputs: BlockInputs) -> Dict[str, Any]:
        route: Any = None
        if config.expression:
            try:
                route = await self.executor.evaluate(config.expression, build_code_namespace(context, inputs))
            except CodeExecutionError as exc:
                raise HandlerExecutionError(f"Router expression error: {exc}") from exc

        if route is None or route == "" or (config.routes and str(route) not in config.routes):
            if config.default_route is None:
                raise HandlerExecutionError(
                    f"Router '{context.identity}' selected unknown route {route!r} and has no default_route"
                )
            route = config.default_route

        route = str(route)
        return {"output": route, "selected_branch": route}


__all__ = [
    "ConditionHandler",
    "FunctionHandler",
    "GenericHandler",
    "ResponseHandler",
    "RouterHandler",
    "TriggerHandler",
    "build_code_namespace",
]
