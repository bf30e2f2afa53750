"""
Execution state for a single workflow run.

The state is owned by the engine running it: block identities are
registered as the graph is expanded and transition
``pending -> running -> succeeded | failed | skipped``.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ExecutionStateError
from .schema import ContainerSettings, WorkflowSchema


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BlockStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (BlockStatus.SUCCEEDED, BlockStatus.FAILED, BlockStatus.SKIPPED)


_ALLOWED_TRANSITIONS = {
    BlockStatus.PENDING: {BlockStatus.RUNNING, BlockStatus.SKIPPED, BlockStatus.SUCCEEDED, BlockStatus.FAILED},
    BlockStatus.RUNNING: {BlockStatus.SUCCEEDED, BlockStatus.FAILED, BlockStatus.SKIPPED},
    BlockStatus.SUCCEEDED: set(),
    BlockStatus.FAILED: set(),
    BlockStatus.SKIPPED: set(),
}


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class BlockState:
    identity: str
    original_id: str
    container_id: Optional[str] = None
    iteration: Optional[int] = None
    status: BlockStatus = BlockStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "original_id": self.original_id,
            "container_id": self.container_id,
            "iteration": self.iteration,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
        }


@dataclass
class ContainerExecution:
    """Resolved iteration items of one loop/parallel container."""

    settings: ContainerSettings
    items: List[Any]
    active: int = 0
    peak_active: int = 0

    @property
    def count(self) -> int:
        return len(self.items)


@dataclass
class ExecutionState:
    run_id: str
    workflow_id: str
    schema: WorkflowSchema
    input_data: Dict[str, Any] = field(default_factory=dict)
    trigger: str = "manual"
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    error: Optional[str] = None
    blocks: Dict[str, BlockState] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    containers: Dict[str, ContainerExecution] = field(default_factory=dict)
    cost: Dict[str, float] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Identity bookkeeping
    # ------------------------------------------------------------------
    def register(
        self,
        identity: str,
        original_id: str,
        *,
        container_id: Optional[str] = None,
        iteration: Optional[int] = None,
    ) -> BlockState:
        if identity in self.blocks:
            raise ExecutionStateError(f"Block identity '{identity}' is already registered for run {self.run_id}")
        if not self.schema.has_block(original_id):
            raise ExecutionStateError(f"Identity '{identity}' does not resolve to a block definition")
        block_state = BlockState(
            identity=identity,
            original_id=original_id,
            container_id=container_id,
            iteration=iteration,
        )
        self.blocks[identity] = block_state
        return block_state

    def get(self, identity: str) -> BlockState:
        try:
            return self.blocks[identity]
        except KeyError as exc:
            raise ExecutionStateError(f"Unknown block identity '{identity}'") from exc

    def status_of(self, identity: str) -> BlockStatus:
        return self.get(identity).status

    def transition(self, identity: str, status: BlockStatus, *, error: Optional[str] = None) -> None:
        block_state = self.get(identity)
        if status not in _ALLOWED_TRANSITIONS[block_state.status]:
            raise ExecutionStateError(
                f"Invalid transition for '{identity}': {block_state.status.value} -> {status.value}"
            )
        now = utcnow()
        if status == BlockStatus.RUNNING:
            block_state.started_at = now
        if status.is_terminal:
            block_state.ended_at = now
        if error is not None:
            block_state.error = error
        block_state.status = status

    def set_output(self, identity: str, output: Dict[str, Any]) -> None:
        self.outputs[identity] = output

    def add_cost(self, cost: Optional[Dict[str, float]]) -> None:
        for key, value in (cost or {}).items():
            self.cost[key] = self.cost.get(key, 0) + value

    def identities_with_status(self, status: BlockStatus) -> List[str]:
        return [identity for identity, block in self.blocks.items() if block.status == status]

    def is_terminal(self) -> bool:
        return all(block.status.is_terminal for block in self.blocks.values())

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_snapshot_data(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "trigger": self.trigger,
            "status": self.status.value,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "input": self.input_data,
            "workflow": self.schema.model_dump(mode="json"),
            "blocks": {identity: block.to_dict() for identity, block in self.blocks.items()},
            "outputs": self.outputs,
            "containers": {
                container_id: {
                    "kind": execution.settings.kind.value,
                    "mode": execution.settings.mode,
                    "max_concurrency": execution.settings.max_concurrency,
                    "items": execution.items,
                    "count": execution.count,
                }
                for container_id, execution in self.containers.items()
            },
            "cost": self.cost,
        }


class ExecutionSnapshot(BaseModel):
    """Immutable capture of an ExecutionState."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    workflow_id: str
    created_at: datetime = Field(default_factory=utcnow)
    state_data: Dict[str, Any]

    @classmethod
    def from_state(cls, state: ExecutionState) -> "ExecutionSnapshot":
        return cls(
            run_id=state.run_id,
            workflow_id=state.workflow_id,
            state_data=state.to_snapshot_data(),
        )


__all__ = [
    "BlockState",
    "BlockStatus",
    "ContainerExecution",
    "ExecutionSnapshot",
    "ExecutionState",
    "RunStatus",
    "utcnow",
]
