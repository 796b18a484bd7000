"""CLI entrypoint for batch-control."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from batch_control import __version__
from batch_control.engine.controllers import (
    BatchCliController,
    JobsHistoryCommand,
    RecordsImportCommand,
    RecordsOutcomesCommand,
    RunBatchCommand,
)
from batch_control.engine.errors import BatchControlError
from batch_control.logging_setup import setup_logging

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="batch-control")
@click.option("--log-level", default=None, help="Logging level (default from env or INFO).")
def batch_control(log_level: str | None) -> None:
    """Batch job orchestration with adaptive concurrency control."""

    setup_logging(log_level)


@batch_control.group()
def records() -> None:
    """Task record storage commands."""


@records.command("import")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", required=True, help="Job kind the tasks belong to, for example pause.")
@click.argument("source_file", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def records_import(db_path: Path | None, kind: str, source_file: Path) -> None:
    """Load tasks from a JSON file into the record store."""

    _emit_controller(
        lambda: BATCH_CONTROLLER.import_records(
            RecordsImportCommand(db_path=db_path, kind=kind, source_file=source_file),
        ),
    )


@records.command("outcomes")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", default=None, help="Only show outcomes of this task.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of outcomes to print.",
)
def records_outcomes(db_path: Path | None, task_id: str | None, limit: int) -> None:
    """List recorded task outcomes, newest first."""

    _emit_controller(
        lambda: BATCH_CONTROLLER.list_outcomes(
            RecordsOutcomesCommand(db_path=db_path, limit=limit, task_id=task_id),
        ),
    )


@batch_control.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", required=True, help="Job kind; selects stored tasks and skip states.")
@click.option(
    "--command",
    "command_template",
    required=True,
    help="Command template run per task; supports {task_id} and {payload_file}.",
)
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path("batch-payloads"),
    show_default=True,
    help="Directory for per-task payload files.",
)
@click.option("--job-id", default=None, help="Explicit job id (generated when omitted).")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Desired parallelism.")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Tasks per batch.")
@click.option(
    "--priority",
    type=click.Choice(["low", "normal", "high"]),
    default="normal",
    show_default=True,
    help="Initial task ordering.",
)
@click.option("--no-retry", is_flag=True, default=False, help="Disable the per-task retry loop.")
@click.option(
    "--no-auto-recovery",
    is_flag=True,
    default=False,
    help="Skip the recovery pass over failed tasks.",
)
@click.option(
    "--task-timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Wall-clock timeout of one task attempt.",
)
@click.option(
    "--delay-between-batches-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Pause between batches.",
)
@click.option(
    "--delay-between-tasks-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Pause between serial dispatches (concurrency 1).",
)
def run_batch(  # noqa: PLR0913
    db_path: Path | None,
    kind: str,
    command_template: str,
    workdir: Path,
    job_id: str | None,
    concurrency: int | None,
    batch_size: int | None,
    priority: str,
    no_retry: bool,
    no_auto_recovery: bool,
    task_timeout_seconds: float | None,
    delay_between_batches_seconds: float | None,
    delay_between_tasks_seconds: float | None,
) -> None:
    """Run stored tasks of one kind through the batch engine.

    Ctrl-C cancels the job cooperatively; a second Ctrl-C forces shutdown.
    """

    _emit_controller(
        lambda: BATCH_CONTROLLER.run_batch(
            RunBatchCommand(
                db_path=db_path,
                kind=kind,
                command_template=command_template,
                workdir=workdir,
                job_id=job_id,
                concurrency=concurrency,
                batch_size=batch_size,
                priority=priority,
                retry_enabled=not no_retry,
                auto_recovery=not no_auto_recovery,
                task_timeout_seconds=task_timeout_seconds,
                delay_between_batches_seconds=delay_between_batches_seconds,
                delay_between_tasks_seconds=delay_between_tasks_seconds,
            ),
        ),
    )


@batch_control.group()
def jobs() -> None:
    """Job history commands."""


@jobs.command("history")
@click.option(
    "--state-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Job state snapshot file.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_history(state_file: Path | None, limit: int) -> None:
    """Show finished jobs from the persisted state snapshot, newest first."""

    _emit_controller(
        lambda: BATCH_CONTROLLER.history(JobsHistoryCommand(state_file=state_file, limit=limit)),
    )


def _emit_controller(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except (BatchControlError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    batch_control()
