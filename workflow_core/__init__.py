"""
Workflow execution core: block schema, handler registry and execution engine.
"""
from .errors import (
    ConfigurationError,
    DispatchError,
    ExecutionStateError,
    HandlerExecutionError,
    InvalidContainerError,
    RegistryFrozenError,
    UnknownBlockTypeError,
    WorkflowError,
)
from .identity import VirtualBlockIdentity, decode, encode, extract_original, is_reserved_block_id, is_virtual
from .schema import BlockDefinition, BlockType, EdgeDefinition, WorkflowSchema, parse_workflow_state
from .state import BlockStatus, ExecutionSnapshot, ExecutionState, RunStatus
from .handlers import BlockHandler, HandlerRegistry, build_default_registry
from .storage import InMemorySnapshotStore, SnapshotStore, TortoiseSnapshotStore
from .engine import ExecutionEngine, ExecutionResult

__all__ = [
    "BlockDefinition",
    "BlockHandler",
    "BlockStatus",
    "BlockType",
    "ConfigurationError",
    "DispatchError",
    "EdgeDefinition",
    "ExecutionEngine",
    "ExecutionResult",
    "ExecutionSnapshot",
    "ExecutionState",
    "ExecutionStateError",
    "HandlerExecutionError",
    "HandlerRegistry",
    "InMemorySnapshotStore",
    "InvalidContainerError",
    "RegistryFrozenError",
    "RunStatus",
    "SnapshotStore",
    "TortoiseSnapshotStore",
    "UnknownBlockTypeError",
    "VirtualBlockIdentity",
    "WorkflowError",
    "WorkflowSchema",
    "build_default_registry",
    "decode",
    "encode",
    "extract_original",
    "is_reserved_block_id",
    "is_virtual",
    "parse_workflow_state",
]
