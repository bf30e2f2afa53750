"""
Block handlers and the registry that maps block types to them.

``build_default_registry`` builds the table explicitly; nothing is
registered as a side effect of importing a module.
"""
from __future__ import annotations

from typing import Dict, Optional

import httpx

from workflow_core.code_executor import CodeExecutor
from workflow_core.schema import BlockType

from .api import ApiHandler
from .base import BlockHandler, BlockInputs
from .container import ContainerHandler
from .core import (
    ConditionHandler,
    FunctionHandler,
    GenericHandler,
    ResponseHandler,
    RouterHandler,
    TriggerHandler,
)
from .llm import AgentHandler, EvaluatorHandler, LLMFactory
from .registry import HandlerRegistry
from .workflow import WorkflowHandler


def default_handlers(
    *,
    llm_factory: Optional[LLMFactory] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    code_executor: Optional[CodeExecutor] = None,
) -> Dict[BlockType, BlockHandler]:
    """Return the handler table covering every BlockType."""
    executor = code_executor or CodeExecutor()
    return {
        BlockType.AGENT: AgentHandler(llm_factory),
        BlockType.API: ApiHandler(http_transport),
        BlockType.CONDITION: ConditionHandler(executor),
        BlockType.EVALUATOR: EvaluatorHandler(llm_factory),
        BlockType.FUNCTION: FunctionHandler(executor),
        BlockType.GENERIC: GenericHandler(),
        BlockType.LOOP: ContainerHandler(BlockType.LOOP),
        BlockType.PARALLEL: ContainerHandler(BlockType.PARALLEL),
        BlockType.RESPONSE: ResponseHandler(),
        BlockType.ROUTER: RouterHandler(executor),
        BlockType.TRIGGER: TriggerHandler(),
        BlockType.WORKFLOW: WorkflowHandler(),
    }


def build_default_registry(
    *,
    llm_factory: Optional[LLMFactory] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    code_executor: Optional[CodeExecutor] = None,
    overrides: Optional[Dict[BlockType, BlockHandler]] = None,
) -> HandlerRegistry:
    """Build, validate and freeze the registry used by the engine."""
    handlers = default_handlers(
        llm_factory=llm_factory,
        http_transport=http_transport,
        code_executor=code_executor,
    )
    handlers.update(overrides or {})
    registry = HandlerRegistry(handlers)
    registry.validate_complete()
    return registry.freeze()


__all__ = [
    "AgentHandler",
    "ApiHandler",
    "BlockHandler",
    "BlockInputs",
    "ConditionHandler",
    "ContainerHandler",
    "EvaluatorHandler",
    "FunctionHandler",
    "GenericHandler",
    "HandlerRegistry",
    "ResponseHandler",
    "RouterHandler",
    "TriggerHandler",
    "WorkflowHandler",
    "build_default_registry",
    "default_handlers",
]
