from __future__ import annotations

import asyncio
import json
from pathlib import Path

import allure
import psutil
import pytest

from batch_control.engine.backend.base import TaskExecution
from batch_control.engine.backend.command_backend import TaskExecutionError
from batch_control.engine.errors import InvalidOptionsError
from batch_control.engine.executor import BatchExecutor, order_tasks, split_batches
from batch_control.engine.job_manager import JobManager
from batch_control.engine.models import (
    ErrorKind,
    JobStatus,
    Priority,
    RetryStrategy,
    Task,
    TaskOutcomeStatus,
)
from batch_control.engine.persistence import ProgressSnapshotWriter
from batch_control.engine.resources import ResourceMonitor, ResourceSample
from batch_control.engine.retry_policy import RetryPolicyRegistry
from batch_control.engine.services import BatchService

pytestmark = [
    allure.epic("Batch Engine"),
    allure.feature("Batch Execution"),
]

NO_DELAY_POLICY = RetryPolicyRegistry(
    {
        ErrorKind.NETWORK: RetryStrategy(max_retries=3, delay_seconds=0.0, exponential_backoff=True),
        ErrorKind.TIMEOUT: RetryStrategy(max_retries=2, delay_seconds=0.0, exponential_backoff=False),
        ErrorKind.DEFAULT: RetryStrategy(max_retries=1, delay_seconds=0.0, exponential_backoff=False),
    },
)


class _RecordingNotifier:
    def __init__(self) -> None:
        self.critical: list[str] = []
        self.max_retry: list[tuple[str, int]] = []
        self.job_failures: list[str] = []

    async def notify_critical_error(self, *, task_id: str, action: str, error: str) -> bool:
        self.critical.append(task_id)
        return True

    async def notify_max_retry_exceeded(
        self,
        *,
        task_id: str,
        action: str,
        error: str,
        retry_count: int,
    ) -> bool:
        self.max_retry.append((task_id, retry_count))
        return True

    async def notify_job_failures(self, result) -> bool:
        self.job_failures.append(result.job_id)
        return True


class _RecordingStore:
    def __init__(self) -> None:
        self.written: list[tuple[str, TaskOutcomeStatus]] = []

    def read(self, kind: str) -> list[Task]:
        return []

    def write(self, task_id: str, outcome) -> None:
        self.written.append((task_id, outcome.status))


def _executor(manager, task_executor, **kwargs) -> BatchExecutor:
    kwargs.setdefault("retry_policy", NO_DELAY_POLICY)
    return BatchExecutor(manager, task_executor, **kwargs)


def test_all_tasks_succeed_with_bounded_concurrency(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    task_executor = scripted_executor(delay=0.1)
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor).run(
            "job-1",
            make_tasks(10),
            fast_options(batch_size=5, concurrency=2),
        ),
    )

    assert result.status is JobStatus.COMPLETED
    assert result.completed_tasks == 10
    assert result.failed_tasks == 0
    assert result.progress.percentage == 100
    assert task_executor.max_active == 2


def test_effective_concurrency_follows_memory_pressure(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
    fixed_monitor,
) -> None:
    task_executor = scripted_executor(delay=0.02)
    manager = JobManager(settings=fast_engine_settings)

    asyncio.run(
        _executor(manager, task_executor, resource_monitor=fixed_monitor(0.85)).run(
            "job-1",
            make_tasks(6),
            fast_options(batch_size=6, concurrency=5),
        ),
    )

    assert task_executor.max_active == 1


def test_permanent_error_is_attempted_once(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor(default=TaskExecution.failed("RECAPTCHA detected"))
    notifier = _RecordingNotifier()
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor, notifier=notifier).run(
            "job-1",
            [Task(task_id="locked")],
            fast_options(),
        ),
    )

    assert task_executor.attempts("locked") == 1
    assert result.status is JobStatus.COMPLETED
    assert [item.task_id for item in result.results.failed] == ["locked"]
    assert result.results.failed[0].error_kind is ErrorKind.PERMANENT
    assert notifier.critical == ["locked"]
    assert notifier.job_failures == ["job-1"]


def test_network_errors_then_success_counts_retries(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor(
        {
            "flaky": [
                ConnectionError("NETWORK: connection reset"),
                TaskExecution.failed("ECONNREFUSED"),
                TaskExecution.success({"state": "paused"}),
            ],
        },
    )
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor).run("job-1", [Task(task_id="flaky")], fast_options()),
    )

    assert [item.task_id for item in result.results.success] == ["flaky"]
    assert result.results.success[0].retry_count == 2
    assert result.results.success[0].data == {"state": "paused"}


def test_backoff_delays_follow_policy(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    recording_sleep,
) -> None:
    task_executor = scripted_executor(default=TaskExecution.failed("network unreachable"))
    notifier = _RecordingNotifier()
    manager = JobManager(settings=fast_engine_settings)
    executor = BatchExecutor(
        manager,
        task_executor,
        notifier=notifier,
        sleep=recording_sleep,
    )

    result = asyncio.run(
        executor.run("job-1", [Task(task_id="down")], fast_options(auto_recovery=False)),
    )

    assert task_executor.attempts("down") == 4
    assert recording_sleep.delays == [5.0, 10.0, 20.0]
    assert result.results.failed[0].retry_count == 3
    assert notifier.max_retry == [("down", 3)]


def test_retry_disabled_fails_on_first_error(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor(default=TaskExecution.failed("network down"))
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor).run(
            "job-1",
            [Task(task_id="a")],
            fast_options(retry_enabled=False, auto_recovery=False),
        ),
    )

    assert task_executor.attempts("a") == 1
    assert result.failed_tasks == 1


def test_non_transient_executor_error_is_not_retried(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor(
        default=TaskExecutionError("Command not found: nope", transient=False),
    )
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor).run("job-1", [Task(task_id="a")], fast_options()),
    )

    assert task_executor.attempts("a") == 1
    assert result.results.failed[0].retryable is False


def test_task_timeout_is_classified_and_retried(fast_engine_settings, fast_options) -> None:
    calls: list[str] = []

    async def _hanging(task: Task) -> TaskExecution:
        calls.append(task.task_id)
        await asyncio.sleep(10)
        return TaskExecution.success()

    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, _hanging).run(
            "job-1",
            [Task(task_id="slow")],
            fast_options(task_timeout_seconds=0.05, auto_recovery=False),
        ),
    )

    assert len(calls) == 3
    failed = result.results.failed[0]
    assert failed.error_kind is ErrorKind.TIMEOUT
    assert failed.error.startswith("TIMEOUT")


def test_task_already_in_target_state_is_skipped(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor()
    manager = JobManager(settings=fast_engine_settings)
    tasks = [Task(task_id="done", current_state="paused"), Task(task_id="todo", current_state="active")]

    result = asyncio.run(_executor(manager, task_executor).run("job-1", tasks, fast_options()))

    assert task_executor.calls == ["todo"]
    assert result.skipped_tasks == 1
    assert result.results.skipped[0].reason == "Already paused"


def test_executor_skipped_result_counts_as_skipped(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor(default=TaskExecution.skipped("no subscription"))
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor).run("job-1", [Task(task_id="a")], fast_options()),
    )

    assert result.skipped_tasks == 1
    assert result.processed == result.total_tasks


def test_auto_recovery_moves_recovered_task_to_success(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor(
        {
            "flaky": [TaskExecution.failed("element not clickable")] * 2,
            "locked": [TaskExecution.failed("account locked")] * 5,
        },
    )
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor).run(
            "job-1",
            [Task(task_id="flaky"), Task(task_id="locked")],
            fast_options(),
        ),
    )

    assert task_executor.attempts("flaky") == 3
    assert task_executor.attempts("locked") == 1
    assert result.completed_tasks == 1
    assert result.failed_tasks == 1
    assert result.results.success[0].recovered is True
    assert [item.task_id for item in result.results.failed] == ["locked"]


def test_unexpected_dispatch_error_is_recorded_as_failure(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    manager = JobManager(settings=fast_engine_settings)
    executor = _executor(manager, scripted_executor())
    original = executor.run_with_retry

    async def _explode_once(task: Task, options):
        if task.task_id == "task-2":
            raise RuntimeError("engine hiccup")
        return await original(task, options)

    executor.run_with_retry = _explode_once  # type: ignore[method-assign]

    result = asyncio.run(
        executor.run("job-1", make_tasks(3), fast_options(concurrency=3, auto_recovery=False)),
    )

    assert result.status is JobStatus.COMPLETED
    assert result.completed_tasks == 2
    assert result.failed_tasks == 1
    assert "engine hiccup" in result.results.failed[0].error


def test_cancel_stops_dispatch_at_next_checkpoint(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    task_executor = scripted_executor(delay=0.05)
    manager = JobManager(settings=fast_engine_settings)

    async def _scenario():
        service = BatchService(job_manager=manager, executor=_executor(manager, task_executor))
        handle = service.start_batch(
            make_tasks(20),
            fast_options(batch_size=2, concurrency=2),
            job_id="job-1",
        )
        while len(task_executor.calls) < 2:
            await asyncio.sleep(0.005)
        dispatched = len(task_executor.calls)
        service.cancel("job-1", "operator stop")
        result = await handle.wait()
        return dispatched, result

    dispatched, result = asyncio.run(_scenario())

    assert result.status is JobStatus.CANCELLED
    assert result.processed <= dispatched
    assert len(task_executor.calls) == dispatched
    assert result.processed + result.not_started == 20
    assert result.cancel_reason == "operator stop"


def test_cancel_right_after_start_reaches_cancelled(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    task_executor = scripted_executor()
    manager = JobManager(settings=fast_engine_settings)

    async def _scenario():
        service = BatchService(job_manager=manager, executor=_executor(manager, task_executor))
        handle = service.start_batch(make_tasks(5), fast_options(), job_id="job-1")
        service.cancel("job-1")
        return await asyncio.wait_for(handle.wait(), timeout=fast_engine_settings.cancel_grace_seconds)

    result = asyncio.run(_scenario())

    assert result.status is JobStatus.CANCELLED
    assert result.completed_tasks == 0
    assert task_executor.calls == []


def test_pause_then_resume_matches_uninterrupted_counters(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    def _tasks() -> list[Task]:
        return [Task(task_id=f"t-{index}") for index in range(8)]

    def _script():
        return {"t-3": [TaskExecution.failed("account locked")], "t-5": [TaskExecution.skipped("n/a")]}

    baseline = asyncio.run(
        _executor(JobManager(settings=fast_engine_settings), scripted_executor(_script())).run(
            "baseline",
            _tasks(),
            fast_options(batch_size=2, concurrency=2),
        ),
    )

    manager = JobManager(settings=fast_engine_settings)
    task_executor = scripted_executor(_script(), delay=0.02)

    async def _scenario():
        service = BatchService(job_manager=manager, executor=_executor(manager, task_executor))
        handle = service.start_batch(_tasks(), fast_options(batch_size=2, concurrency=2), job_id="paused")
        while not task_executor.calls:
            await asyncio.sleep(0.005)
        service.pause("paused")
        while manager.get_job("paused").status is not JobStatus.PAUSED:
            await asyncio.sleep(0.005)
        calls_while_paused = len(task_executor.calls)
        await asyncio.sleep(0.1)
        assert len(task_executor.calls) == calls_while_paused
        service.resume("paused")
        return await handle.wait()

    resumed = asyncio.run(_scenario())

    assert (resumed.completed_tasks, resumed.failed_tasks, resumed.skipped_tasks) == (
        baseline.completed_tasks,
        baseline.failed_tasks,
        baseline.skipped_tasks,
    )
    assert resumed.status is JobStatus.COMPLETED


def test_cancel_from_within_pause(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    task_executor = scripted_executor(delay=0.02)
    manager = JobManager(settings=fast_engine_settings)

    async def _scenario():
        service = BatchService(job_manager=manager, executor=_executor(manager, task_executor))
        handle = service.start_batch(make_tasks(6), fast_options(batch_size=2, concurrency=2), job_id="j")
        service.pause("j")
        while manager.get_job("j").status is not JobStatus.PAUSED:
            await asyncio.sleep(0.005)
        service.cancel("j", "stop while paused")
        return await handle.wait()

    result = asyncio.run(_scenario())

    assert result.status is JobStatus.CANCELLED
    assert task_executor.calls == []


def test_serial_pacing_inserts_delay_between_tasks(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
    recording_sleep,
) -> None:
    manager = JobManager(settings=fast_engine_settings)
    executor = _executor(manager, scripted_executor(), sleep=recording_sleep)

    asyncio.run(
        executor.run(
            "job-1",
            make_tasks(4),
            fast_options(
                concurrency=1,
                batch_size=2,
                delay_between_tasks_seconds=3.0,
                delay_between_batches_seconds=5.0,
            ),
        ),
    )

    assert recording_sleep.delays == [3.0, 5.0, 3.0]


def test_priority_ordering_is_stable() -> None:
    tasks = [
        Task(task_id="a", last_failure_at=0, last_success_at=30),
        Task(task_id="b", last_failure_at=20, last_success_at=0),
        Task(task_id="c", last_failure_at=0, last_success_at=10),
        Task(task_id="d", last_failure_at=50, last_success_at=0),
    ]

    assert [task.task_id for task in order_tasks(tasks, Priority.NORMAL)] == ["a", "b", "c", "d"]
    assert [task.task_id for task in order_tasks(tasks, Priority.HIGH)] == ["d", "b", "a", "c"]
    assert [task.task_id for task in order_tasks(tasks, Priority.LOW)] == ["b", "d", "c", "a"]


def test_split_batches_keeps_remainder() -> None:
    tasks = [Task(task_id=str(index)) for index in range(7)]

    assert [len(batch) for batch in split_batches(tasks, 3)] == [3, 3, 1]


def test_outcomes_and_progress_snapshots_are_written(
    tmp_path: Path,
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    store = _RecordingStore()
    writer = ProgressSnapshotWriter(tmp_path)
    manager = JobManager(settings=fast_engine_settings)

    asyncio.run(
        _executor(manager, scripted_executor(), record_store=store, progress_writer=writer).run(
            "job-1",
            make_tasks(3),
            fast_options(batch_size=2),
        ),
    )

    assert [task_id for task_id, _ in store.written] == ["task-1", "task-2", "task-3"]
    snapshot = json.loads(writer.path_for("job-1").read_text("utf-8"))
    assert snapshot["progress"]["percentage"] == 100
    assert snapshot["stats"]["completed"] == 3


def test_orchestration_failure_force_completes_job_and_reraises(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    class _BrokenWriter:
        def write(self, job_id: str, payload: dict) -> bool:
            raise RuntimeError("disk on fire")

    notifier = _RecordingNotifier()
    manager = JobManager(settings=fast_engine_settings)
    executor = _executor(
        manager,
        scripted_executor(),
        notifier=notifier,
        progress_writer=_BrokenWriter(),
    )

    with pytest.raises(RuntimeError, match="disk on fire"):
        asyncio.run(executor.run("job-1", make_tasks(2), fast_options()))

    assert not manager.is_active("job-1")
    assert manager.history()[0].status is JobStatus.FAILED
    assert notifier.critical == ["job-1"]


def test_terminal_counters_add_up(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    task_executor = scripted_executor(
        {
            "task-2": [TaskExecution.failed("captcha")],
            "task-4": [TaskExecution.skipped("nothing to do")],
        },
    )
    manager = JobManager(settings=fast_engine_settings)
    observed: list[tuple[int, int]] = []

    async def _scenario():
        service = BatchService(job_manager=manager, executor=_executor(manager, task_executor))
        handle = service.start_batch(make_tasks(5), fast_options(batch_size=2, concurrency=2), job_id="j")
        service.on_progress("j", lambda _job_id, progress: observed.append((progress.processed, 5)))
        return await handle.wait()

    result = asyncio.run(_scenario())

    assert all(processed <= total for processed, total in observed)
    assert result.completed_tasks + result.failed_tasks + result.skipped_tasks == result.total_tasks


def test_duplicate_task_ids_are_rejected_before_the_job_starts(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    manager = JobManager(settings=fast_engine_settings)
    task_executor = scripted_executor()
    tasks = [Task(task_id="a"), Task(task_id="a"), Task(task_id="b")]

    with pytest.raises(InvalidOptionsError, match="Duplicate task id"):
        asyncio.run(_executor(manager, task_executor).run("j", tasks, fast_options(concurrency=2)))

    async def _start_through_service() -> None:
        service = BatchService(job_manager=manager, executor=_executor(manager, task_executor))
        service.start_batch(tasks, fast_options(concurrency=2), job_id="j")

    with pytest.raises(InvalidOptionsError):
        asyncio.run(_start_through_service())

    assert task_executor.calls == []
    assert manager.active_jobs() == []
    assert manager.history() == []


def test_auto_recovery_result_of_skipped_moves_task_to_skipped(
    fast_engine_settings,
    scripted_executor,
    fast_options,
) -> None:
    task_executor = scripted_executor(
        {
            "flaky": [
                TaskExecution.failed("element not clickable"),
                TaskExecution.failed("element not clickable"),
                TaskExecution.skipped("already paused"),
            ],
        },
    )
    manager = JobManager(settings=fast_engine_settings)

    result = asyncio.run(
        _executor(manager, task_executor).run("job-1", [Task(task_id="flaky")], fast_options()),
    )

    assert task_executor.attempts("flaky") == 3
    assert (result.completed_tasks, result.failed_tasks, result.skipped_tasks) == (0, 0, 1)
    assert result.results.skipped[0].reason == "already paused"
    assert result.results.skipped[0].recovered is True


def test_failing_resource_sampler_does_not_fail_the_job(
    fast_engine_settings,
    scripted_executor,
    fast_options,
    make_tasks,
) -> None:
    def _broken_sampler() -> ResourceSample:
        raise psutil.AccessDenied()

    monitor = ResourceMonitor(pressure_pause_seconds=0.0, sampler=_broken_sampler)
    manager = JobManager(settings=fast_engine_settings, resource_monitor=monitor)

    result = asyncio.run(
        _executor(manager, scripted_executor(), resource_monitor=monitor).run(
            "job-1",
            make_tasks(4),
            fast_options(batch_size=2, concurrency=3),
        ),
    )

    assert result.status is JobStatus.COMPLETED
    assert result.completed_tasks == 4
    assert result.final_memory_rss_bytes is None
