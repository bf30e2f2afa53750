"""
Block type -> handler lookup table.

The registry is filled from an explicit table at startup and frozen before
the engine uses it, so lookups never race with registration.
"""
from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional, Union

from workflow_core.errors import ConfigurationError, RegistryFrozenError, UnknownBlockTypeError
from workflow_core.schema import BlockType

from .base import BlockHandler


class HandlerRegistry:
    """Maps each BlockType to the handler that executes it."""

    def __init__(self, handlers: Optional[Mapping[BlockType, BlockHandler]] = None) -> None:
        self._handlers: Dict[BlockType, BlockHandler] = {}
        self._frozen = False
        for block_type, handler in (handlers or {}).items():
            self.register(block_type, handler)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, block_type: BlockType, handler: BlockHandler) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register handler for '{getattr(block_type, 'value', block_type)}': registry is frozen"
            )
        block_type = BlockType(block_type)
        if block_type in self._handlers:
            raise ConfigurationError(f"Handler for '{block_type.value}' is already registered")
        self._handlers[block_type] = handler

    def freeze(self) -> "HandlerRegistry":
        self._frozen = True
        return self

    def get(self, block_type: Union[BlockType, str]) -> BlockHandler:
        try:
            return self._handlers[BlockType(block_type)]
        except (KeyError, ValueError) as exc:
            name = getattr(block_type, "value", block_type)
            raise UnknownBlockTypeError(f"No handler registered for block type '{name}'") from exc

    def maybe_get(self, block_type: Union[BlockType, str]) -> Optional[BlockHandler]:
        try:
            return self.get(block_type)
        except UnknownBlockTypeError:
            return None

    def validate_complete(self) -> None:
        """Raise when any member of BlockType has no handler."""
        missing = [block_type.value for block_type in BlockType if block_type not in self._handlers]
        if missing:
            raise ConfigurationError(f"Missing handlers for block types: {', '.join(sorted(missing))}")

    def __contains__(self, block_type: object) -> bool:
        try:
            return BlockType(block_type) in self._handlers
        except ValueError:
            return False

    def __iter__(self) -> Iterator[BlockType]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


__all__ = ["HandlerRegistry"]
