"""
Handler contract shared by every block type.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, FrozenSet, Mapping

from pydantic import BaseModel, ValidationError

from workflow_core.context import ExecutionContext
from workflow_core.errors import HandlerExecutionError
from workflow_core.schema import BlockType, parse_block_config
from workflow_core.templates import resolve_template_payload

BlockInputs = Mapping[str, Dict[str, Any]]


class BlockHandler(ABC):
    """
    Executes one block type.

    ``execute`` receives the resolved config (templates substituted against
    the identity's visible outputs) and the outputs of the active upstream
    blocks keyed by block id. Failures are raised; the engine records them
    on the identity only.
    """

    block_type: ClassVar[BlockType]
    # Config fields kept verbatim (code and expressions see variables directly)
    template_exempt_fields: ClassVar[FrozenSet[str]] = frozenset()

    def resolve_config(self, context: ExecutionContext) -> BaseModel:
        raw = context.block.config.model_dump()
        variables = context.variables()
        resolved = {
            key: value if key in self.template_exempt_fields else resolve_template_payload(value, variables)
            for key, value in raw.items()
        }
        try:
            return parse_block_config(context.block.type, resolved)
        except ValidationError as exc:
            raise HandlerExecutionError(
                f"Resolved config for block '{context.identity}' is invalid: {exc}"
            ) from exc

    @abstractmethod
    async def execute(
        self,
        context: ExecutionContext,
        config: BaseModel,
        inputs: BlockInputs,
    ) -> Dict[str, Any]:
        raise NotImplementedError


__all__ = ["BlockHandler", "BlockInputs"]
