"""
Run context handed to block handlers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from shared.logger import RunLogger

from .identity import encode
from .schema import BlockDefinition, BlockType
from .state import ExecutionState

if TYPE_CHECKING:  # pragma: no cover
    from .engine import ExecutionEngine


@dataclass(frozen=True)
class IterationScope:
    """One iteration of a loop or parallel container."""

    container_id: str
    kind: BlockType
    index: int
    item: Any
    items: List[Any]

    def as_variables(self) -> Dict[str, Any]:
        return {"index": self.index, "item": self.item, "items": self.items}


def alias_for(name: Optional[str]) -> Optional[str]:
    """Normalize a human block name into a template alias (``My Block`` -> ``my_block``)."""
    if not name:
        return None
    alias = "".join(ch if ch.isalnum() else "_" for ch in name.strip().lower())
    alias = "_".join(part for part in alias.split("_") if part)
    return alias or None


@dataclass
class ExecutionContext:
    """
    Everything a handler may need about the identity it runs as.

    ``identity`` is the (possibly virtual) block identity; ``block`` is the
    definition behind it. ``logger`` is bound to the run and the identity.
    """

    identity: str
    block: BlockDefinition
    state: ExecutionState
    logger: RunLogger
    engine: Optional["ExecutionEngine"] = None
    scope: Optional[IterationScope] = None
    depth: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.state.run_id

    @property
    def workflow_id(self) -> str:
        return self.state.workflow_id

    @property
    def input_data(self) -> Dict[str, Any]:
        return self.state.input_data

    def add_cost(self, cost: Optional[Dict[str, float]]) -> None:
        self.state.add_cost(cost)

    def visible_outputs(self) -> Dict[str, Dict[str, Any]]:
        """
        Outputs addressable from this identity, keyed by original block id.

        Top-level outputs are always visible. Body outputs are visible only
        for the iteration this identity belongs to.
        """
        visible: Dict[str, Dict[str, Any]] = {}
        for identity, output in self.state.outputs.items():
            block_state = self.state.blocks.get(identity)
            if block_state is not None and block_state.container_id is None:
                visible[identity] = output
        if self.scope is not None:
            for body_id in self.state.schema.body_of(self.scope.container_id):
                token = encode(body_id, self.scope.container_id, self.scope.index)
                if token in self.state.outputs:
                    visible[body_id] = self.state.outputs[token]
        return visible

    def variables(self) -> Dict[str, Any]:
        """Build the variable map used to resolve ``{{...}}`` templates."""
        variable_map: Dict[str, Any] = {}

        for key, value in self.input_data.items():
            variable_map.setdefault(key, value)
        variable_map["input"] = self.input_data

        schema = self.state.schema
        for block_id, output in self.visible_outputs().items():
            variable_map[block_id] = output
            if schema.has_block(block_id):
                alias = alias_for(schema.get_block(block_id).name)
                if alias and alias not in variable_map:
                    variable_map[alias] = output

        if self.scope is not None:
            key = "loop" if self.scope.kind == BlockType.LOOP else "parallel"
            variable_map[key] = self.scope.as_variables()

        return variable_map


__all__ = ["ExecutionContext", "IterationScope", "alias_for"]
