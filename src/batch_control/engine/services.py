"""Caller-facing use-case service for batch runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from batch_control.config import Settings
from batch_control.engine.backend.base import TaskExecutor
from batch_control.engine.executor import BatchExecutor, ensure_unique_task_ids
from batch_control.engine.job_manager import JobManager, ProgressCallback
from batch_control.engine.models import (
    BatchOptions,
    Job,
    JobHistoryEntry,
    JobResult,
    ProgressSnapshot,
    Task,
)
from batch_control.engine.persistence import (
    ProgressSnapshotWriter,
    ResultSpillStore,
    StatePersistence,
)
from batch_control.engine.resources import ResourceMonitor
from batch_control.engine.retry_policy import RetryPolicyRegistry
from batch_control.notifications.gateway import NotificationGateway
from batch_control.records.repository import RecordStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobHandle:
    """Handle of a running batch; ``wait`` returns the terminal result."""

    job_id: str
    _task: asyncio.Task[JobResult] = field(repr=False)

    async def wait(self) -> JobResult:
        return await self._task

    def done(self) -> bool:
        return self._task.done()


class BatchService:
    """Starts batch runs in the background and exposes their controls."""

    def __init__(self, *, job_manager: JobManager, executor: BatchExecutor) -> None:
        self.job_manager = job_manager
        self.executor = executor
        self._running: dict[str, asyncio.Task[JobResult]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        task_executor: TaskExecutor,
        *,
        record_store: RecordStore | None = None,
        notifier: NotificationGateway | None = None,
        resource_monitor: ResourceMonitor | None = None,
    ) -> BatchService:
        """Wire the engine from settings; collaborators may be injected."""

        resource_monitor = resource_monitor or ResourceMonitor(
            max_memory_bytes=settings.resources.max_memory_bytes,
            adaptive=settings.resources.adaptive_concurrency,
        )
        job_manager = JobManager(
            settings=settings.engine,
            persistence=StatePersistence(
                settings.persistence.state_file,
                history_size=settings.engine.history_size,
            ),
            spill_store=ResultSpillStore(settings.persistence.results_dir),
            resource_monitor=resource_monitor,
        )
        executor = BatchExecutor(
            job_manager,
            task_executor,
            retry_policy=RetryPolicyRegistry(),
            resource_monitor=resource_monitor,
            notifier=notifier or NotificationGateway.from_settings(settings.notifications),
            record_store=record_store,
            progress_writer=ProgressSnapshotWriter(settings.persistence.progress_dir),
            max_concurrency=settings.resources.max_concurrency,
        )
        return cls(job_manager=job_manager, executor=executor)

    def start_batch(
        self,
        tasks: Sequence[Task],
        options: BatchOptions | None = None,
        *,
        job_id: str | None = None,
    ) -> JobHandle:
        """Register the job and schedule its run on the current event loop."""

        options = options or BatchOptions()
        ensure_unique_task_ids(tasks)
        job: Job = self.job_manager.start_job(job_id, options.kind, len(tasks), options)
        run = asyncio.get_running_loop().create_task(
            self.executor.run_started(job.job_id, list(tasks), options),
            name=f"batch-{job.job_id}",
        )
        self._running[job.job_id] = run
        run.add_done_callback(lambda _: self._running.pop(job.job_id, None))
        return JobHandle(job_id=job.job_id, _task=run)

    async def run_batch(
        self,
        tasks: Sequence[Task],
        options: BatchOptions | None = None,
        *,
        job_id: str | None = None,
    ) -> JobResult:
        return await self.start_batch(tasks, options, job_id=job_id).wait()

    def cancel(self, job_id: str, reason: str = "User requested") -> Job:
        return self.job_manager.cancel_job(job_id, reason)

    def pause(self, job_id: str) -> Job:
        return self.job_manager.pause_job(job_id)

    def resume(self, job_id: str) -> Job:
        return self.job_manager.resume_job(job_id)

    def get_progress(self, job_id: str) -> ProgressSnapshot:
        return self.job_manager.get_progress(job_id)

    def on_progress(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
        return self.job_manager.on_progress(job_id, callback)

    def history(self) -> list[JobHistoryEntry]:
        return self.job_manager.history()

    def shutdown(self, reason: str = "System shutdown") -> list[JobResult]:
        """Cancel every active job, persist state and stop background run tasks."""

        results = self.job_manager.shutdown(reason)
        for run in list(self._running.values()):
            run.cancel()
        return results
