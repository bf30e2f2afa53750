"""
Loop and parallel containers.

Containers never run as a single step: the engine expands their body once
per iteration. The handler's job is turning the resolved container settings
into the list of iteration items.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List

from workflow_core.context import ExecutionContext
from workflow_core.errors import ConfigurationError, InvalidContainerError
from workflow_core.schema import BlockType, ContainerConfig, ContainerSettings
from workflow_core.templates import resolve_template_variables

from .base import BlockHandler, BlockInputs


class ContainerHandler(BlockHandler):
    def __init__(self, block_type: BlockType) -> None:
        self.block_type = block_type

    def resolve_items(self, settings: ContainerSettings, variable_map: Dict[str, Any]) -> List[Any]:
        if not settings.iterates_collection:
            return list(range(settings.count))
        return self._collection_items(settings, variable_map)

    def _collection_items(self, settings: ContainerSettings, variable_map: Dict[str, Any]) -> List[Any]:
        collection = settings.collection
        if isinstance(collection, str):
            collection = collection.strip()
            if "{{" in collection:
                collection = resolve_template_variables(collection, variable_map)
            if isinstance(collection, str):
                if not collection:
                    return []
                try:
                    collection = json.loads(collection)
                except ValueError as exc:
                    raise InvalidContainerError(
                        f"Collection for '{settings.container_id}' is not a list or JSON array: {collection[:100]}"
                    ) from exc

        if collection is None:
            return []
        if isinstance(collection, dict):
            return [[key, value] for key, value in collection.items()]
        if isinstance(collection, (list, tuple)):
            return list(collection)
        raise InvalidContainerError(
            f"Collection for '{settings.container_id}' must be a list, got {type(collection).__name__}"
        )

    async def execute(self, context: ExecutionContext, config: ContainerConfig, inputs: BlockInputs) -> Dict[str, Any]:
        raise ConfigurationError(
            f"{self.block_type.value} block '{context.identity}' is expanded by the engine and cannot run directly"
        )


__all__ = ["ContainerHandler"]
