"""
Shared exception hierarchy for the workflow execution core.
"""


class WorkflowError(Exception):
    """Base class for all workflow execution errors."""


class ConfigurationError(WorkflowError):
    """Raised when a workflow cannot run as configured. Fatal to the run."""


class UnknownBlockTypeError(ConfigurationError):
    """Raised when no handler is registered for a block type."""


class InvalidContainerError(ConfigurationError):
    """Raised for malformed loop/parallel metadata or collections."""


class RegistryFrozenError(ConfigurationError):
    """Raised when registering a handler after startup."""


class HandlerExecutionError(WorkflowError):
    """Raised by a block handler when its own logic fails."""


class ExecutionStateError(WorkflowError):
    """Raised when an execution state invariant would be violated."""


class DispatchError(WorkflowError):
    """Raised when a due schedule could not be enqueued or launched."""


__all__ = [
    "ConfigurationError",
    "DispatchError",
    "ExecutionStateError",
    "HandlerExecutionError",
    "InvalidContainerError",
    "RegistryFrozenError",
    "UnknownBlockTypeError",
    "WorkflowError",
]
