"""Controllers for batch-control CLI commands."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from batch_control.config import Settings
from batch_control.engine.backend import CommandTaskExecutor
from batch_control.engine.errors import BatchControlError
from batch_control.engine.models import BatchOptions, JobResult, ProgressSnapshot, Task
from batch_control.engine.persistence import StatePersistence
from batch_control.engine.report import (
    render_history_lines,
    render_job_report,
    render_progress_line,
)
from batch_control.engine.services import BatchService
from batch_control.records import SQLiteRecordStore, import_tasks_from_json

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecordsImportCommand:
    """CLI input for loading tasks from a JSON file."""

    db_path: Path | None
    kind: str
    source_file: Path


@dataclass(slots=True)
class RecordsOutcomesCommand:
    """CLI input for listing recorded task outcomes."""

    db_path: Path | None
    limit: int
    task_id: str | None = None


@dataclass(slots=True)
class RunBatchCommand:
    """CLI input for one batch run over stored tasks."""

    db_path: Path | None
    kind: str
    command_template: str
    workdir: Path
    job_id: str | None = None
    concurrency: int | None = None
    batch_size: int | None = None
    priority: str = "normal"
    retry_enabled: bool = True
    auto_recovery: bool = True
    task_timeout_seconds: float | None = None
    delay_between_batches_seconds: float | None = None
    delay_between_tasks_seconds: float | None = None


@dataclass(slots=True)
class JobsHistoryCommand:
    """CLI input for rendering persisted job history."""

    state_file: Path | None
    limit: int = 20


class BatchCliController:
    """Coordinates record import, batch runs and history inspection."""

    def import_records(self, command: RecordsImportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _record_store(settings) as store:
            count = import_tasks_from_json(store, command.kind, command.source_file)
        return [f"Imported {count} task(s) of kind {command.kind} into {settings.db_path}"]

    def list_outcomes(self, command: RecordsOutcomesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _record_store(settings) as store:
            outcomes = store.list_outcomes(task_id=command.task_id, limit=command.limit)
        if not outcomes:
            return ["No recorded outcomes."]
        lines = []
        for outcome in outcomes:
            line = (
                f"{outcome.recorded_at.isoformat()} task={outcome.task_id} "
                f"status={outcome.status} retries={outcome.retry_count}"
            )
            if outcome.error_kind:
                line += f" kind={outcome.error_kind}"
            if outcome.error:
                line += f" error={outcome.error[:120]!r}"
            elif outcome.reason:
                line += f" reason={outcome.reason!r}"
            lines.append(line)
        return lines

    def run_batch(self, command: RunBatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        options = BatchOptions.from_settings(settings.engine, **_option_overrides(command))

        with _record_store(settings) as store:
            tasks = store.read(command.kind)
            if not tasks:
                return [f"No tasks of kind {command.kind} in {settings.db_path}."]
            service = BatchService.from_settings(
                settings,
                CommandTaskExecutor(command.command_template, workdir=command.workdir),
                record_store=store,
            )
            result = asyncio.run(_run_with_signals(service, tasks, options, command.job_id))
        return render_job_report(result)

    def history(self, command: JobsHistoryCommand) -> list[str]:
        settings = Settings.from_env()
        state_file = command.state_file or settings.persistence.state_file
        entries = StatePersistence(
            state_file,
            history_size=settings.engine.history_size,
        ).restore()
        return render_history_lines(entries[: command.limit])


async def _run_with_signals(
    service: BatchService,
    tasks: list[Task],
    options: BatchOptions,
    job_id: str | None,
) -> JobResult:
    """Run a batch; first SIGINT/SIGTERM cancels cooperatively, the second forces shutdown."""

    handle = service.start_batch(tasks, options, job_id=job_id)
    total = len(tasks)

    def _log_progress(current_job_id: str, progress: ProgressSnapshot) -> None:
        logger.info(render_progress_line(current_job_id, progress, total))

    unsubscribe = service.on_progress(handle.job_id, _log_progress)

    def _on_signal(signame: str) -> None:
        if not service.job_manager.is_active(handle.job_id):
            return
        if service.job_manager.is_cancel_requested(handle.job_id):
            logger.warning("%s received again; shutting down", signame)
            service.shutdown(f"Received {signame}")
            return
        logger.warning("%s received; cancelling job %s", signame, handle.job_id)
        try:
            service.cancel(handle.job_id, f"Received {signame}")
        except BatchControlError as error:
            logger.warning("Cancel failed: %s", error)

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)

    try:
        return await handle.wait()
    except asyncio.CancelledError:
        result = service.job_manager.get_result(handle.job_id)
        if result is None:
            raise
        return result
    finally:
        unsubscribe()
        for sig in installed:
            loop.remove_signal_handler(sig)


def _option_overrides(command: RunBatchCommand) -> dict[str, Any]:
    overrides: dict[str, Any] = {
        "kind": command.kind,
        "priority": command.priority,
        "retry_enabled": command.retry_enabled,
        "auto_recovery": command.auto_recovery,
    }
    optional = {
        "concurrency": command.concurrency,
        "batch_size": command.batch_size,
        "task_timeout_seconds": command.task_timeout_seconds,
        "delay_between_batches_seconds": command.delay_between_batches_seconds,
        "delay_between_tasks_seconds": command.delay_between_tasks_seconds,
    }
    overrides.update({key: value for key, value in optional.items() if value is not None})
    return overrides


@contextmanager
def _record_store(settings: Settings) -> Iterator[SQLiteRecordStore]:
    store = SQLiteRecordStore(settings.db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
