"""Task executor implementations."""

from batch_control.engine.backend.base import TaskExecution, TaskExecutor
from batch_control.engine.backend.command_backend import (
    CommandTaskExecutor,
    TaskExecutionError,
    build_command_args,
)

__all__ = [
    "CommandTaskExecutor",
    "TaskExecution",
    "TaskExecutionError",
    "TaskExecutor",
    "build_command_args",
]
