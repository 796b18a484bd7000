"""Batch execution loop: ordering, batching, bounded concurrency and retries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from batch_control.engine.backend.base import TaskExecutor
from batch_control.engine.errors import InvalidOptionsError, TaskBookkeepingError, TaskTimeoutError
from batch_control.engine.job_manager import JobManager
from batch_control.engine.models import (
    BatchOptions,
    ErrorKind,
    JobResult,
    JobStatus,
    Priority,
    Task,
    TaskOutcome,
    TaskOutcomeStatus,
)
from batch_control.engine.persistence import ProgressSnapshotWriter
from batch_control.engine.resources import ResourceMonitor
from batch_control.engine.retry_policy import RetryPolicyRegistry
from batch_control.notifications.gateway import NotificationGateway
from batch_control.records.repository import RecordStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def order_tasks(tasks: Sequence[Task], priority: Priority) -> list[Task]:
    """One-time stable ordering; ``normal`` keeps input order."""

    if priority is Priority.HIGH:
        return sorted(tasks, key=lambda task: -task.last_failure_at)
    if priority is Priority.LOW:
        return sorted(tasks, key=lambda task: task.last_success_at)
    return list(tasks)


def ensure_unique_task_ids(tasks: Sequence[Task]) -> None:
    """Reject task lists that repeat an id; in-flight bookkeeping is keyed by id."""

    seen: set[str] = set()
    duplicates: list[str] = []
    for task in tasks:
        if task.task_id in seen and task.task_id not in duplicates:
            duplicates.append(task.task_id)
        seen.add(task.task_id)
    if duplicates:
        raise InvalidOptionsError(f"Duplicate task id(s): {', '.join(duplicates)}")


def split_batches(tasks: Sequence[Task], batch_size: int) -> list[list[Task]]:
    return [list(tasks[index : index + batch_size]) for index in range(0, len(tasks), batch_size)]


class BatchExecutor:
    """Runs one job's tasks through the retry loop under a per-batch concurrency limit.

    Job state is read and written only through ``JobManager``.
    """

    def __init__(
        self,
        job_manager: JobManager,
        task_executor: TaskExecutor,
        *,
        retry_policy: RetryPolicyRegistry | None = None,
        resource_monitor: ResourceMonitor | None = None,
        notifier: NotificationGateway | None = None,
        record_store: RecordStore | None = None,
        progress_writer: ProgressSnapshotWriter | None = None,
        max_concurrency: int | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.job_manager = job_manager
        self.task_executor = task_executor
        self.retry_policy = retry_policy or RetryPolicyRegistry()
        self.resource_monitor = resource_monitor
        self.notifier = notifier
        self.record_store = record_store
        self.progress_writer = progress_writer
        self.max_concurrency = max_concurrency
        self._sleep = sleep

    async def run(
        self,
        job_id: str | None,
        tasks: Sequence[Task],
        options: BatchOptions | None = None,
    ) -> JobResult:
        options = options or BatchOptions()
        ensure_unique_task_ids(tasks)
        job = self.job_manager.start_job(job_id, options.kind, len(tasks), options)
        return await self.run_started(job.job_id, tasks, options)

    async def run_started(
        self,
        job_id: str,
        tasks: Sequence[Task],
        options: BatchOptions,
    ) -> JobResult:
        """Drive a job already registered with ``JobManager.start_job``."""

        manager = self.job_manager
        try:
            ordered = order_tasks(tasks, options.priority)
            await self._run_batches(job_id, ordered, options)
            if (
                options.auto_recovery
                and manager.is_active(job_id)
                and not manager.is_cancel_requested(job_id)
            ):
                await self._auto_recover(job_id, {task.task_id: task for task in ordered}, options)
        except asyncio.CancelledError:
            if manager.is_active(job_id):
                logger.warning("Batch run of job %s was cancelled by its caller", job_id)
                if not manager.is_cancel_requested(job_id):
                    manager.cancel_job(job_id, "Run task cancelled")
                manager.complete_job(job_id, JobStatus.CANCELLED)
            raise
        except Exception as error:
            logger.exception("Batch job %s failed", job_id)
            if manager.is_active(job_id):
                manager.force_complete_job(job_id, JobStatus.FAILED)
            await self._notify_critical(job_id, options.kind, f"Batch job failed: {error}")
            raise

        if not manager.is_active(job_id):
            result = manager.complete_job(job_id)
        elif manager.is_cancel_requested(job_id):
            result = manager.complete_job(job_id, JobStatus.CANCELLED)
        else:
            result = manager.complete_job(job_id, JobStatus.COMPLETED)

        if self.notifier is not None and result.failed_tasks:
            await self.notifier.notify_job_failures(result)
        return result

    async def _run_batches(self, job_id: str, tasks: list[Task], options: BatchOptions) -> None:
        manager = self.job_manager
        batches = split_batches(tasks, options.batch_size)
        for index, batch in enumerate(batches, start=1):
            if manager.is_cancel_requested(job_id) or not manager.is_active(job_id):
                logger.info("Job %s stopping before batch %d/%d", job_id, index, len(batches))
                return
            if manager.is_pause_requested(job_id):
                await self._wait_while_paused(job_id)
                if manager.is_cancel_requested(job_id) or not manager.is_active(job_id):
                    return

            if self.resource_monitor is not None:
                await self.resource_monitor.check_pressure()
            effective = self._effective_concurrency(options)
            logger.info(
                "Job %s batch %d/%d: %d task(s), concurrency=%d",
                job_id,
                index,
                len(batches),
                len(batch),
                effective,
            )

            if options.concurrency == 1:
                settled = await self._run_serial(job_id, batch, options)
            else:
                gate = asyncio.Semaphore(effective)
                settled = await asyncio.gather(
                    *(self._dispatch(job_id, task, options, gate) for task in batch),
                    return_exceptions=True,
                )
            self._settle(job_id, batch, settled)

            if not manager.is_active(job_id):
                return
            self._after_batch(job_id, options)

            if index < len(batches):
                await self._sleep(options.delay_between_batches_seconds)

    async def _run_serial(
        self,
        job_id: str,
        batch: list[Task],
        options: BatchOptions,
    ) -> list[TaskOutcome | BaseException | None]:
        settled: list[TaskOutcome | BaseException | None] = []
        for position, task in enumerate(batch):
            if self.job_manager.is_cancel_requested(job_id):
                settled.extend([None] * (len(batch) - position))
                break
            if position > 0 and options.delay_between_tasks_seconds > 0:
                await self._sleep(options.delay_between_tasks_seconds)
            try:
                settled.append(await self._dispatch(job_id, task, options, None))
            except Exception as error:  # noqa: BLE001
                settled.append(error)
        return settled

    async def _dispatch(
        self,
        job_id: str,
        task: Task,
        options: BatchOptions,
        gate: asyncio.Semaphore | None,
    ) -> TaskOutcome | None:
        """Run one task end to end; None when it was never dispatched."""

        if gate is None:
            return await self._dispatch_now(job_id, task, options)
        async with gate:
            return await self._dispatch_now(job_id, task, options)

    async def _dispatch_now(self, job_id: str, task: Task, options: BatchOptions) -> TaskOutcome | None:
        manager = self.job_manager
        if manager.is_cancel_requested(job_id) or not manager.is_active(job_id):
            return None
        manager.start_task(job_id, task.task_id, {"kind": options.kind})
        outcome = await self.run_with_retry(task, options)
        manager.complete_task(job_id, task.task_id, outcome)
        return outcome

    async def run_with_retry(self, task: Task, options: BatchOptions) -> TaskOutcome:
        """Execute ``task`` with timeout, classification and back-off; never raises."""

        skip_states = options.resolved_skip_states()
        if task.current_state is not None and task.current_state in skip_states:
            logger.info("Task %s skipped: already %s", task.task_id, task.current_state)
            return TaskOutcome(
                status=TaskOutcomeStatus.SKIPPED,
                reason=f"Already {task.current_state}",
            )

        attempt = 0
        while True:
            error, outcome = await self._attempt(task, options, attempt)
            if outcome is not None:
                return outcome

            classification, strategy = self.retry_policy.lookup(error)
            message = str(error)
            retryable = classification.retryable and getattr(error, "transient", True) is not False
            if not options.retry_enabled or not retryable or attempt >= strategy.max_retries:
                logger.warning(
                    "Task %s failed after %d retr%s (%s): %s",
                    task.task_id,
                    attempt,
                    "y" if attempt == 1 else "ies",
                    classification.kind.value,
                    message,
                )
                if classification.kind is ErrorKind.PERMANENT:
                    await self._notify_critical(task.task_id, options.kind, message)
                elif attempt > 0:
                    await self._notify_max_retry(task.task_id, options.kind, message, attempt)
                return TaskOutcome(
                    status=TaskOutcomeStatus.FAILED,
                    retry_count=attempt,
                    error=message,
                    error_kind=classification.kind,
                    retryable=retryable,
                )

            attempt += 1
            delay = strategy.delay_for_attempt(attempt)
            logger.info(
                "Retrying task %s in %.1fs (%d/%d, %s)",
                task.task_id,
                delay,
                attempt,
                strategy.max_retries,
                classification.kind.value,
            )
            await self._sleep(delay)

    async def _attempt(
        self,
        task: Task,
        options: BatchOptions,
        attempt: int,
    ) -> tuple[str | BaseException | None, TaskOutcome | None]:
        try:
            execution = await asyncio.wait_for(
                self.task_executor(task),
                timeout=options.task_timeout_seconds,
            )
        except TimeoutError:
            return TaskTimeoutError(task.task_id, options.task_timeout_seconds), None
        except Exception as error:  # noqa: BLE001
            return error, None

        if execution.status is TaskOutcomeStatus.SUCCESS:
            return None, TaskOutcome(
                status=TaskOutcomeStatus.SUCCESS,
                retry_count=attempt,
                data=dict(execution.data),
            )
        if execution.status is TaskOutcomeStatus.SKIPPED:
            return None, TaskOutcome(
                status=TaskOutcomeStatus.SKIPPED,
                retry_count=attempt,
                reason=execution.reason,
                data=dict(execution.data),
            )
        return execution.error or "Task failed without error message", None

    def _settle(
        self,
        job_id: str,
        batch: list[Task],
        settled: Sequence[TaskOutcome | BaseException | None],
    ) -> None:
        """Record rejected dispatches as failures and write outcomes to the record store."""

        for task, item in zip(batch, settled, strict=False):
            if isinstance(item, TaskBookkeepingError):
                raise item
            if isinstance(item, BaseException):
                logger.error("Task %s raised unexpectedly: %r", task.task_id, item)
                outcome = TaskOutcome(
                    status=TaskOutcomeStatus.FAILED,
                    error=f"Unexpected error: {item}",
                    error_kind=ErrorKind.DEFAULT,
                )
                if self.job_manager.is_task_in_flight(job_id, task.task_id):
                    self.job_manager.complete_task(job_id, task.task_id, outcome)
                item = outcome
            if item is not None:
                self._write_record(task.task_id, item)

    def _after_batch(self, job_id: str, options: BatchOptions) -> None:
        metrics: dict[str, float | int | None] = {}
        sample = self.resource_monitor.try_sample() if self.resource_monitor is not None else None
        if sample is not None:
            metrics = {
                "memory_rss_bytes": sample.rss_bytes,
                "memory_ratio": sample.ratio,
                "cpu_percent": sample.cpu_percent,
            }
        progress = self.job_manager.update_progress(job_id, **metrics)
        if not (options.save_progress and self.progress_writer is not None):
            return
        job = self.job_manager.get_job(job_id)
        self.progress_writer.write(
            job_id,
            {
                "status": job.status.value,
                "progress": progress.to_dict(),
                "stats": {
                    "completed": job.completed_tasks,
                    "failed": job.failed_tasks,
                    "skipped": job.skipped_tasks,
                    "total": job.total_tasks,
                },
            },
        )

    async def _wait_while_paused(self, job_id: str) -> None:
        manager = self.job_manager
        manager.mark_paused(job_id)
        poll = manager.settings.pause_poll_seconds
        while (
            manager.is_active(job_id)
            and manager.is_pause_requested(job_id)
            and not manager.is_cancel_requested(job_id)
        ):
            await self._sleep(poll)

    async def _auto_recover(
        self,
        job_id: str,
        tasks_by_id: dict[str, Task],
        options: BatchOptions,
    ) -> None:
        """Re-attempt eligible failures once each, sequentially."""

        manager = self.job_manager
        candidates = [
            result
            for result in manager.failed_results(job_id)
            if result.retryable
            and result.retry_count < options.recovery_max_retry_count
            and result.task_id in tasks_by_id
        ]
        if not candidates:
            return
        logger.info("Job %s: auto-recovery of %d failed task(s)", job_id, len(candidates))

        for position, failed in enumerate(candidates):
            if manager.is_cancel_requested(job_id) or not manager.is_active(job_id):
                return
            if position > 0:
                await self._sleep(options.recovery_delay_seconds)
            task = tasks_by_id[failed.task_id]
            error, outcome = await self._attempt(task, options, failed.retry_count)
            if outcome is None:
                logger.info("Recovery of task %s failed: %s", task.task_id, error)
                continue
            if not manager.is_active(job_id):
                return
            if manager.record_recovery(
                job_id,
                task.task_id,
                outcome.data,
                status=outcome.status,
                reason=outcome.reason,
            ):
                logger.info("Task %s recovered as %s", task.task_id, outcome.status.value)
                self._write_record(task.task_id, outcome)

    def _effective_concurrency(self, options: BatchOptions) -> int:
        requested = options.concurrency
        if self.max_concurrency is not None:
            requested = min(requested, self.max_concurrency)
        if self.resource_monitor is None:
            return max(1, requested)
        return max(1, self.resource_monitor.recommended_concurrency(requested))

    def _write_record(self, task_id: str, outcome: TaskOutcome) -> None:
        if self.record_store is None:
            return
        try:
            self.record_store.write(task_id, outcome)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record outcome of task %s", task_id)

    async def _notify_critical(self, task_id: str, action: str, error: str) -> None:
        if self.notifier is not None:
            await self.notifier.notify_critical_error(task_id=task_id, action=action, error=error)

    async def _notify_max_retry(self, task_id: str, action: str, error: str, retries: int) -> None:
        if self.notifier is not None:
            await self.notifier.notify_max_retry_exceeded(
                task_id=task_id,
                action=action,
                error=error,
                retry_count=retries,
            )
