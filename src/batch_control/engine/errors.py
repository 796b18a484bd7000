"""Errors raised by the batch engine."""

from __future__ import annotations


class BatchControlError(Exception):
    """Base exception for batch engine errors."""


class JobNotFoundError(BatchControlError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DuplicateJobError(BatchControlError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class NotRunningError(BatchControlError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Job {job_id} is not running (status={status})")
        self.job_id = job_id
        self.status = status


class NotPausedError(BatchControlError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Job {job_id} is not paused (status={status})")
        self.job_id = job_id
        self.status = status


class TaskBookkeepingError(BatchControlError):
    """A task was completed without a matching start; an engine defect."""


class InvalidOptionsError(BatchControlError, ValueError):
    """Batch options failed validation."""


class TaskTimeoutError(BatchControlError, TimeoutError):
    """Task executor exceeded the wall-clock timeout."""

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"TIMEOUT: task {task_id} exceeded {timeout_seconds:g}s")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds
