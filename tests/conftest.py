"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable

import pytest

from batch_control.config import EngineSettings
from batch_control.engine.backend.base import TaskExecution
from batch_control.engine.models import BatchOptions, Task
from batch_control.engine.resources import ResourceMonitor, ResourceSample

ECHO_TASK_COMMAND_TEMPLATE = (
    f"{sys.executable} -m batch_control.engine.backend.echo_task --payload-file {{payload_file}}"
)


class ScriptedExecutor:
    """Task executor replaying per-task scripted results.

    Script items are TaskExecution values or exceptions to raise; once a task's
    script is exhausted ``default`` is returned.
    """

    def __init__(
        self,
        script: dict[str, list[TaskExecution | BaseException]] | None = None,
        *,
        default: TaskExecution | None = None,
        delay: float = 0.0,
    ) -> None:
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.default = default or TaskExecution.success()
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, task: Task) -> TaskExecution:
        self.calls.append(task.task_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            steps = self.script.get(task.task_id)
            item = steps.pop(0) if steps else self.default
            if isinstance(item, BaseException):
                raise item
            return item
        finally:
            self.active -= 1

    def attempts(self, task_id: str) -> int:
        return self.calls.count(task_id)


class RecordingSleep:
    """Drop-in for asyncio.sleep that records requested delays and only yields."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture()
def echo_task_command() -> str:
    return ECHO_TASK_COMMAND_TEMPLATE


@pytest.fixture()
def scripted_executor() -> type[ScriptedExecutor]:
    return ScriptedExecutor


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def fast_engine_settings() -> EngineSettings:
    return EngineSettings(
        cancel_grace_seconds=0.5,
        monitor_interval_seconds=0.05,
        stuck_after_seconds=30.0,
        pause_poll_seconds=0.01,
        persist_interval_seconds=0.0,
    )


@pytest.fixture()
def fast_options() -> Callable[..., BatchOptions]:
    def _build(**overrides: object) -> BatchOptions:
        values: dict[str, object] = {
            "kind": "pause",
            "delay_between_batches_seconds": 0.0,
            "delay_between_tasks_seconds": 0.0,
            "recovery_delay_seconds": 0.0,
        }
        values.update(overrides)
        return BatchOptions.from_mapping(values)

    return _build


@pytest.fixture()
def make_tasks() -> Callable[..., list[Task]]:
    def _build(count: int, prefix: str = "task") -> list[Task]:
        return [Task(task_id=f"{prefix}-{index}") for index in range(1, count + 1)]

    return _build


@pytest.fixture()
def fixed_monitor() -> Callable[..., ResourceMonitor]:
    """ResourceMonitor with a constant utilization ratio and 1 GiB budget."""

    def _build(ratio: float = 0.1, *, adaptive: bool = True) -> ResourceMonitor:
        budget = 1024 * 1024 * 1024
        return ResourceMonitor(
            max_memory_bytes=budget,
            adaptive=adaptive,
            pressure_pause_seconds=0.0,
            sampler=lambda: ResourceSample(
                rss_bytes=int(budget * ratio),
                ratio=ratio,
                cpu_percent=1.0,
            ),
        )

    return _build
