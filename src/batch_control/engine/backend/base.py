"""Task executor interface consumed by the batch executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from batch_control.engine.models import Task, TaskOutcomeStatus


@dataclass(slots=True)
class TaskExecution:
    """Result of one executor invocation."""

    status: TaskOutcomeStatus
    error: str | None = None
    reason: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, data: dict[str, Any] | None = None) -> TaskExecution:
        return cls(status=TaskOutcomeStatus.SUCCESS, data=dict(data or {}))

    @classmethod
    def failed(cls, error: str) -> TaskExecution:
        return cls(status=TaskOutcomeStatus.FAILED, error=error)

    @classmethod
    def skipped(cls, reason: str) -> TaskExecution:
        return cls(status=TaskOutcomeStatus.SKIPPED, reason=reason)


class TaskExecutor(Protocol):
    """Protocol implemented by task executors.

    Executors run a single attempt; timeouts and retries are applied by the engine.
    """

    async def __call__(self, task: Task) -> TaskExecution:
        """Run one attempt of ``task``. May raise; errors are classified by message."""
