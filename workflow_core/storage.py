"""
Snapshot persistence contract.

The engine hands every finished run's ExecutionSnapshot to a SnapshotStore.
Snapshots are written once and never updated.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from shared.database.workflow_models import WorkflowExecutionSnapshot
from shared.logger import get_logger

from .errors import ExecutionStateError
from .state import ExecutionSnapshot

logger = get_logger("workflow_core.storage")


def to_json_ready(data: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce handler outputs (datetimes, sets, models) into plain JSON values."""
    return json.loads(json.dumps(data, default=str))


@runtime_checkable
class SnapshotStore(Protocol):
    async def save(self, snapshot: ExecutionSnapshot) -> str:
        ...

    async def get(self, snapshot_id: str) -> Optional[ExecutionSnapshot]:
        ...


class InMemorySnapshotStore:
    """Process-local store, used by tests and nested runs."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, ExecutionSnapshot] = {}

    async def save(self, snapshot: ExecutionSnapshot) -> str:
        if snapshot.id in self._snapshots:
            raise ExecutionStateError(f"Snapshot {snapshot.id} already exists")
        self._snapshots[snapshot.id] = snapshot
        return snapshot.id

    async def get(self, snapshot_id: str) -> Optional[ExecutionSnapshot]:
        return self._snapshots.get(snapshot_id)

    def __len__(self) -> int:
        return len(self._snapshots)


class TortoiseSnapshotStore:
    """Stores snapshots in the ``workflow_execution_snapshots`` table."""

    async def save(self, snapshot: ExecutionSnapshot) -> str:
        await WorkflowExecutionSnapshot.create(
            id=snapshot.id,
            workflow_id=snapshot.workflow_id,
            run_id=snapshot.run_id,
            state_data=to_json_ready(snapshot.state_data),
            created_at=snapshot.created_at,
        )
        logger.debug(f"Stored snapshot {snapshot.id} for run {snapshot.run_id}")
        return snapshot.id

    async def get(self, snapshot_id: str) -> Optional[ExecutionSnapshot]:
        record = await WorkflowExecutionSnapshot.get_or_none(id=snapshot_id)
        if record is None:
            return None
        return ExecutionSnapshot(
            id=record.id,
            run_id=record.run_id,
            workflow_id=record.workflow_id,
            created_at=record.created_at,
            state_data=record.state_data,
        )


__all__ = [
    "InMemorySnapshotStore",
    "SnapshotStore",
    "TortoiseSnapshotStore",
    "to_json_ready",
]
