"""In-process registry of batch jobs: lifecycle, counters, history and events."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import replace
from uuid import uuid4

from batch_control.config import EngineSettings
from batch_control.engine.errors import (
    DuplicateJobError,
    JobNotFoundError,
    NotPausedError,
    NotRunningError,
    TaskBookkeepingError,
)
from batch_control.engine.models import (
    BatchOptions,
    Job,
    JobEvent,
    JobEventType,
    JobHistoryEntry,
    JobResult,
    JobResults,
    JobStatus,
    ProgressSnapshot,
    TaskInFlight,
    TaskOutcome,
    TaskOutcomeStatus,
    TaskResult,
    utc_now,
)
from batch_control.engine.persistence import ResultSpillStore, StatePersistence
from batch_control.engine.progress import compute_progress
from batch_control.engine.report import render_job_report
from batch_control.engine.resources import WARNING_RATIO, ResourceMonitor, ResourceSample

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, ProgressSnapshot], None]
EventListener = Callable[[JobEvent], None]

_CANCELLABLE = frozenset({JobStatus.RUNNING, JobStatus.PAUSING, JobStatus.PAUSED})
_RESUMABLE = frozenset({JobStatus.PAUSING, JobStatus.PAUSED})
_METRIC_FIELDS = frozenset({"memory_rss_bytes", "memory_ratio", "cpu_percent"})


class JobManager:
    """Owns the active job table; the only component that mutates a Job.

    Must be driven from a running asyncio event loop when grace timers or the
    background monitor are needed; pure bookkeeping calls work without one.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings | None = None,
        persistence: StatePersistence | None = None,
        spill_store: ResultSpillStore | None = None,
        resource_monitor: ResourceMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.persistence = persistence
        self.spill_store = spill_store
        self.resource_monitor = resource_monitor
        self._clock = clock
        self._active: dict[str, Job] = {}
        self._history: deque[JobHistoryEntry] = deque(maxlen=self.settings.history_size)
        self._finished: OrderedDict[str, JobResult] = OrderedDict()
        self._grace_handles: dict[str, asyncio.TimerHandle] = {}
        self._progress_callbacks: dict[str, list[ProgressCallback]] = {}
        self._last_delivered: dict[str, int] = {}
        self._listeners: list[EventListener] = []
        self._monitor_task: asyncio.Task[None] | None = None

        if persistence is not None:
            self._history.extend(persistence.restore())

    # -- lifecycle -----------------------------------------------------------------

    def start_job(
        self,
        job_id: str | None,
        kind: str,
        total_tasks: int,
        options: BatchOptions | None = None,
    ) -> Job:
        if total_tasks < 0:
            raise ValueError("total_tasks must be >= 0.")
        job_id = job_id or f"batch-{kind}-{uuid4().hex[:12]}"
        if job_id in self._active:
            raise DuplicateJobError(job_id)

        job = Job(
            job_id=job_id,
            kind=kind,
            total_tasks=total_tasks,
            options=options or BatchOptions(kind=kind),
            errors=deque(maxlen=self.settings.max_errors_in_memory),
            started_monotonic=self._clock(),
        )
        job.status = JobStatus.RUNNING
        self._active[job_id] = job
        self._finished.pop(job_id, None)
        self._emit(JobEventType.JOB_STARTED, job_id, kind=kind, total_tasks=total_tasks)

        if self._monitor_task is None:
            self._start_monitoring()
        self._persist()
        job.last_saved_monotonic = self._clock()

        logger.info("Batch job started: %s (kind=%s, tasks=%d)", job_id, kind, total_tasks)
        return job

    def update_progress(self, job_id: str, **patch: float | int | None) -> ProgressSnapshot:
        """Merge sampled metrics, publish progress and persist at most every few seconds."""

        job = self._require(job_id)
        unknown = sorted(set(patch) - _METRIC_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported progress field(s): {', '.join(unknown)}")
        for name, value in patch.items():
            setattr(job.metrics, name, value)

        progress = compute_progress(job)
        self._publish_progress(job, progress)

        now = self._clock()
        if now - job.last_saved_monotonic >= self.settings.persist_interval_seconds:
            self._persist()
            job.last_saved_monotonic = now
        return progress

    def start_task(self, job_id: str, task_id: str, info: dict[str, object] | None = None) -> None:
        job = self._require(job_id)
        if task_id in job.in_flight:
            raise TaskBookkeepingError(f"Task {task_id} already in flight for job {job_id}")
        entry = TaskInFlight(
            task_id=task_id,
            info=dict(info or {}),
            started_at=utc_now(),
            started_monotonic=self._clock(),
        )
        job.in_flight[task_id] = entry
        job.current_task = entry
        self._emit(JobEventType.TASK_STARTED, job_id, task_id=task_id)

    def complete_task(self, job_id: str, task_id: str, outcome: TaskOutcome) -> TaskResult | None:
        """Record a task outcome; returns None when the job was already finalized."""

        job = self._active.get(job_id)
        if job is None:
            logger.info(
                "Ignoring late outcome of task %s: job %s is no longer active",
                task_id,
                job_id,
            )
            return None
        entry = job.in_flight.pop(task_id, None)
        if entry is None:
            raise TaskBookkeepingError(
                f"complete_task({task_id!r}) without a matching start_task in job {job_id}",
            )
        if job.current_task is entry:
            job.current_task = next(reversed(job.in_flight.values()), None)

        duration_ms = (self._clock() - entry.started_monotonic) * 1000
        result = TaskResult(
            task_id=task_id,
            status=outcome.status,
            duration_ms=duration_ms,
            retry_count=outcome.retry_count,
            error=outcome.error,
            reason=outcome.reason,
            error_kind=outcome.error_kind,
            retryable=outcome.retryable,
            info=entry.info,
            data=dict(outcome.data),
        )

        if outcome.status is TaskOutcomeStatus.SUCCESS:
            job.completed_tasks += 1
        elif outcome.status is TaskOutcomeStatus.FAILED:
            job.failed_tasks += 1
            job.errors.append(f"{task_id}: {outcome.error or 'unknown error'}")
        else:
            job.skipped_tasks += 1
        job.results.for_status(outcome.status).append(result)

        processed = job.processed
        job.metrics.avg_processing_ms = (
            job.metrics.avg_processing_ms * (processed - 1) + duration_ms
        ) / processed

        self._emit(
            JobEventType.TASK_COMPLETED,
            job_id,
            task_id=task_id,
            status=outcome.status.value,
            duration_ms=round(duration_ms, 1),
        )
        self._manage_memory(job)
        self._publish_progress(job, compute_progress(job))
        return result

    def record_recovery(
        self,
        job_id: str,
        task_id: str,
        data: dict[str, object] | None = None,
        *,
        status: TaskOutcomeStatus = TaskOutcomeStatus.SUCCESS,
        reason: str | None = None,
    ) -> bool:
        """Move a failed result to success (or skipped) after a recovery attempt."""

        if status is TaskOutcomeStatus.FAILED:
            raise ValueError("Recovery must end in success or skipped.")
        job = self._require(job_id)
        for index, failed in enumerate(job.results.failed):
            if failed.task_id != task_id:
                continue
            del job.results.failed[index]
            job.results.for_status(status).append(
                replace(
                    failed,
                    status=status,
                    error=None,
                    reason=reason,
                    recovered=True,
                    data=dict(data or {}),
                ),
            )
            job.failed_tasks -= 1
            if status is TaskOutcomeStatus.SUCCESS:
                job.completed_tasks += 1
            else:
                job.skipped_tasks += 1
            self._publish_progress(job, compute_progress(job))
            return True
        return False

    def cancel_job(self, job_id: str, reason: str = "User requested") -> Job:
        job = self._require(job_id)
        if job.status not in _CANCELLABLE:
            raise NotRunningError(job_id, job.status.value)

        logger.warning("Cancellation requested for job %s: %s", job_id, reason)
        job.cancel_requested = True
        job.pause_requested = False
        job.cancel_reason = reason
        job.status = JobStatus.CANCELLING
        self._emit(JobEventType.JOB_CANCELLING, job_id, reason=reason)
        self._schedule_grace_timer(job_id)
        self._persist()
        return job

    def pause_job(self, job_id: str) -> Job:
        job = self._require(job_id)
        if job.status is not JobStatus.RUNNING:
            raise NotRunningError(job_id, job.status.value)
        logger.info("Pause requested for job %s", job_id)
        job.pause_requested = True
        job.status = JobStatus.PAUSING
        self._emit(JobEventType.JOB_PAUSING, job_id)
        return job

    def mark_paused(self, job_id: str) -> bool:
        """Acknowledge a pause request at a checkpoint (pausing -> paused)."""

        job = self._require(job_id)
        if job.status is not JobStatus.PAUSING:
            return False
        job.status = JobStatus.PAUSED
        self._emit(JobEventType.JOB_PAUSED, job_id)
        self._persist()
        logger.info("Job %s paused", job_id)
        return True

    def resume_job(self, job_id: str) -> Job:
        job = self._require(job_id)
        if job.status not in _RESUMABLE:
            raise NotPausedError(job_id, job.status.value)
        logger.info("Job %s resumed", job_id)
        job.pause_requested = False
        job.status = JobStatus.RUNNING
        self._emit(JobEventType.JOB_RESUMED, job_id)
        return job

    def complete_job(self, job_id: str, status: JobStatus | str = JobStatus.COMPLETED) -> JobResult:
        job = self._active.get(job_id)
        if job is None:
            finished = self._finished.get(job_id)
            if finished is None:
                raise JobNotFoundError(job_id)
            return finished

        handle = self._grace_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()

        job.status = JobStatus(status)
        job.ended_at = utc_now()
        duration_seconds = self._clock() - job.started_monotonic
        if self.resource_monitor is not None:
            sample = self._safe_sample()
            if sample is not None:
                job.metrics.final_memory_rss_bytes = sample.rss_bytes
                job.metrics.final_cpu_percent = sample.cpu_percent

        progress = compute_progress(job)
        result = JobResult(
            job_id=job.job_id,
            kind=job.kind,
            status=job.status,
            total_tasks=job.total_tasks,
            completed_tasks=job.completed_tasks,
            failed_tasks=job.failed_tasks,
            skipped_tasks=job.skipped_tasks,
            not_started=max(0, job.total_tasks - job.processed),
            started_at=job.started_at,
            ended_at=job.ended_at,
            duration_seconds=duration_seconds,
            avg_processing_ms=job.metrics.avg_processing_ms,
            progress=progress,
            results=job.results.copy(),
            errors=list(job.errors),
            cancel_reason=job.cancel_reason,
            results_files=list(job.results_files),
            final_memory_rss_bytes=job.metrics.final_memory_rss_bytes,
        )
        self._add_to_history(job, duration_seconds)
        self._remember(result)

        del self._active[job_id]
        self._publish_progress(job, progress)
        self._progress_callbacks.pop(job_id, None)
        self._last_delivered.pop(job_id, None)

        self._emit(JobEventType.JOB_COMPLETED, job_id, status=job.status.value)
        for line in render_job_report(result):
            logger.info(line)

        self._persist()
        if not self._active:
            self._stop_monitoring()
        return result

    def force_complete_job(self, job_id: str, status: JobStatus | str = JobStatus.FAILED) -> JobResult:
        logger.warning("Force-completing job %s as %s", job_id, JobStatus(status).value)
        return self.complete_job(job_id, status)

    def shutdown(self, reason: str = "System shutdown") -> list[JobResult]:
        """Finalize every active job as cancelled and persist."""

        results: list[JobResult] = []
        for job_id in list(self._active):
            job = self._active[job_id]
            job.cancel_requested = True
            job.cancel_reason = job.cancel_reason or reason
            logger.warning("Cancelling job %s on shutdown", job_id)
            results.append(self.complete_job(job_id, JobStatus.CANCELLED))
        self._stop_monitoring()
        return results

    # -- queries -------------------------------------------------------------------

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def is_cancel_requested(self, job_id: str) -> bool:
        job = self._active.get(job_id)
        return job.cancel_requested if job is not None else False

    def is_pause_requested(self, job_id: str) -> bool:
        job = self._active.get(job_id)
        return job.pause_requested if job is not None else False

    def is_task_in_flight(self, job_id: str, task_id: str) -> bool:
        job = self._active.get(job_id)
        return job is not None and task_id in job.in_flight

    def get_job(self, job_id: str) -> Job:
        """Read-only copy of an active job."""

        job = self._require(job_id)
        return replace(
            job,
            in_flight=dict(job.in_flight),
            errors=deque(job.errors, maxlen=job.errors.maxlen),
            results=job.results.copy(),
            results_files=list(job.results_files),
            metrics=replace(job.metrics),
        )

    def failed_results(self, job_id: str) -> list[TaskResult]:
        return list(self._require(job_id).results.failed)

    def get_progress(self, job_id: str) -> ProgressSnapshot:
        job = self._active.get(job_id)
        if job is not None:
            return compute_progress(job)
        finished = self._finished.get(job_id)
        if finished is None:
            raise JobNotFoundError(job_id)
        return finished.progress

    def get_result(self, job_id: str) -> JobResult | None:
        return self._finished.get(job_id)

    def active_jobs(self) -> list[str]:
        return list(self._active)

    def history(self) -> list[JobHistoryEntry]:
        return list(self._history)

    # -- observers -----------------------------------------------------------------

    def on_progress(self, job_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress observer; returns an unsubscribe callable."""

        self._require(job_id)
        callbacks = self._progress_callbacks.setdefault(job_id, [])
        callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -- monitoring ----------------------------------------------------------------

    def monitor_tick(self) -> None:
        """Sample resources into job metrics and flag long-running tasks."""

        sample = self._safe_sample() if self.resource_monitor is not None else None
        now = self._clock()
        for job in list(self._active.values()):
            if sample is not None:
                job.metrics.memory_rss_bytes = sample.rss_bytes
                job.metrics.memory_ratio = sample.ratio
                job.metrics.cpu_percent = sample.cpu_percent
                if sample.ratio > WARNING_RATIO:
                    logger.warning("High memory usage: %.1f%%", sample.ratio * 100)
                    self._emit(
                        JobEventType.MEMORY_WARNING,
                        job.job_id,
                        usage_percent=round(sample.ratio * 100, 1),
                    )
            for entry in job.in_flight.values():
                elapsed = now - entry.started_monotonic
                if entry.stuck_reported or elapsed <= self.settings.stuck_after_seconds:
                    continue
                entry.stuck_reported = True
                logger.warning(
                    "Task %s of job %s running for %.0fs",
                    entry.task_id,
                    job.job_id,
                    elapsed,
                )
                self._emit(
                    JobEventType.TASK_STUCK,
                    job.job_id,
                    task_id=entry.task_id,
                    elapsed_seconds=round(elapsed, 1),
                )

    def _start_monitoring(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; background job monitor not started")
            return
        self._monitor_task = loop.create_task(self._monitor_loop())

    def _stop_monitoring(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.monitor_interval_seconds)
            try:
                self.monitor_tick()
            except Exception:  # noqa: BLE001
                logger.exception("Job monitor tick failed")

    # -- internals -----------------------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self._active.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _schedule_grace_timer(self, job_id: str) -> None:
        if job_id in self._grace_handles:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; grace timer for job %s not scheduled", job_id)
            return
        self._grace_handles[job_id] = loop.call_later(
            self.settings.cancel_grace_seconds,
            self._on_grace_expired,
            job_id,
        )

    def _on_grace_expired(self, job_id: str) -> None:
        self._grace_handles.pop(job_id, None)
        if job_id not in self._active:
            return
        logger.warning(
            "Job %s did not stop within %.0fs of cancellation",
            job_id,
            self.settings.cancel_grace_seconds,
        )
        self.force_complete_job(job_id, JobStatus.CANCELLED)

    def _manage_memory(self, job: Job) -> None:
        limit = self.settings.max_results_in_memory
        if job.results.total() <= limit:
            return
        # Per-list tail, shrunk so the three tails together stay within the cap.
        keep = min(self.settings.results_keep_recent, limit // len(TaskOutcomeStatus))
        older = JobResults(
            success=job.results.success[:-keep] if keep else list(job.results.success),
            failed=job.results.failed[:-keep] if keep else list(job.results.failed),
            skipped=job.results.skipped[:-keep] if keep else list(job.results.skipped),
        )
        if older.total() == 0:
            return
        if self.spill_store is not None:
            try:
                path = self.spill_store.spill(job.job_id, older)
            except OSError:
                logger.exception("Failed to spill results of job %s; keeping them", job.job_id)
                return
            job.results_files.append(str(path))
        else:
            logger.warning(
                "Dropping %d old results of job %s (no spill store configured)",
                older.total(),
                job.job_id,
            )
        for status in TaskOutcomeStatus:
            bucket = job.results.for_status(status)
            del bucket[: len(older.for_status(status))]

    def _add_to_history(self, job: Job, duration_seconds: float) -> None:
        self._history.appendleft(
            JobHistoryEntry(
                job_id=job.job_id,
                kind=job.kind,
                status=job.status,
                total_tasks=job.total_tasks,
                completed_tasks=job.completed_tasks,
                failed_tasks=job.failed_tasks,
                skipped_tasks=job.skipped_tasks,
                started_at=job.started_at,
                ended_at=job.ended_at,
                duration_seconds=round(duration_seconds, 3),
                cancel_reason=job.cancel_reason,
                results_files=list(job.results_files),
            ),
        )

    def _remember(self, result: JobResult) -> None:
        self._finished[result.job_id] = result
        while len(self._finished) > self.settings.history_size:
            self._finished.popitem(last=False)

    def _publish_progress(self, job: Job, progress: ProgressSnapshot) -> None:
        last = self._last_delivered.get(job.job_id, -1)
        if progress.processed < last:
            return
        self._last_delivered[job.job_id] = progress.processed
        for callback in list(self._progress_callbacks.get(job.job_id, ())):
            try:
                callback(job.job_id, progress)
            except Exception:  # noqa: BLE001
                logger.exception("Progress callback failed for job %s", job.job_id)
        self._emit(JobEventType.JOB_PROGRESS, job.job_id, **progress.to_dict())

    def _emit(self, event_type: JobEventType, job_id: str, **details: object) -> None:
        if not self._listeners:
            return
        event = JobEvent(event_type=event_type, job_id=job_id, details=dict(details))
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Job event listener failed for %s", event_type.value)

    def _persist(self) -> None:
        if self.persistence is None:
            return
        self.persistence.save(self._active.values(), self._history)

    def _safe_sample(self) -> ResourceSample | None:
        return self.resource_monitor.try_sample() if self.resource_monitor else None
