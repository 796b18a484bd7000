"""Subprocess-based task executor driven by a command template."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from pathlib import Path

from batch_control.engine.backend.base import TaskExecution
from batch_control.engine.models import Task

logger = logging.getLogger(__name__)

DEFAULT_SKIP_EXIT_CODE = 3
_STDERR_TAIL_CHARS = 500


class TaskExecutionError(RuntimeError):
    """Executor error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandTaskExecutor:
    """Run a command per task; the exit code decides the outcome.

    Supported placeholders: ``{task_id}`` and ``{payload_file}`` (JSON file holding the
    task payload). Exit 0 means success, ``skip_exit_code`` means skipped, anything
    else is a failure carrying the tail of stderr.
    """

    def __init__(
        self,
        command_template: str,
        *,
        workdir: Path,
        skip_exit_code: int = DEFAULT_SKIP_EXIT_CODE,
        env: dict[str, str] | None = None,
    ) -> None:
        stripped = command_template.strip()
        if not stripped:
            raise TaskExecutionError("Command template is empty.", transient=False)
        self.command_template = stripped
        self.workdir = workdir
        self.skip_exit_code = skip_exit_code
        self.env = env

    async def __call__(self, task: Task) -> TaskExecution:
        payload_file = self._write_payload(task)
        argv = build_command_args(
            self.command_template,
            task_id=task.task_id,
            payload_file=payload_file,
        )

        env = os.environ.copy()
        env["BATCH_CONTROL_TASK_ID"] = task.task_id
        if self.env:
            env.update(self.env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise TaskExecutionError(f"Command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise TaskExecutionError(f"Command failed to start: {error}", transient=True) from error

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            await _terminate_process(process)
            raise

        exit_code = process.returncode
        if exit_code == 0:
            return TaskExecution.success(_parse_stdout(stdout))
        stderr_tail = stderr.decode("utf-8", errors="replace").strip()[-_STDERR_TAIL_CHARS:]
        if exit_code == self.skip_exit_code:
            return TaskExecution.skipped(stderr_tail or f"exit code {exit_code}")
        logger.debug("Task %s command exited with %s", task.task_id, exit_code)
        return TaskExecution.failed(stderr_tail or f"Command exited with code {exit_code}")

    def _write_payload(self, task: Task) -> Path:
        path = self.workdir / f"{task.task_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(
                {
                    "task_id": task.task_id,
                    "current_state": task.current_state,
                    "payload": dict(task.payload),
                },
                ensure_ascii=False,
            ),
            "utf-8",
        )
        return path


def build_command_args(command_template: str, *, task_id: str, payload_file: Path) -> list[str]:
    try:
        rendered = command_template.format(
            task_id=shlex.quote(task_id),
            payload_file=shlex.quote(str(payload_file)),
        )
    except (KeyError, IndexError) as error:
        raise TaskExecutionError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise TaskExecutionError("Command template rendered empty command.", transient=False)
    return argv


def _parse_stdout(stdout: bytes) -> dict[str, object]:
    text = stdout.decode("utf-8", errors="replace").strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"stdout": text[-_STDERR_TAIL_CHARS:]}
    return parsed if isinstance(parsed, dict) else {"stdout": parsed}


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
