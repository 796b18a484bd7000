"""Operator-facing text rendering of job results, progress and history."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping

from batch_control.engine.models import JobHistoryEntry, JobResult, ProgressSnapshot
from batch_control.engine.progress import render_progress_bar

_MAX_ERRORS_SHOWN = 5


def render_job_report(result: JobResult) -> list[str]:
    """Render the final report of one job."""

    lines = [
        f"Batch job {result.job_id} ({result.kind}) finished: {result.status.value}",
        (
            f"Tasks: total={result.total_tasks} success={result.completed_tasks} "
            f"failed={result.failed_tasks} skipped={result.skipped_tasks} "
            f"not_started={result.not_started}"
        ),
        (
            f"Duration: {_fmt_seconds(result.duration_seconds)} "
            f"avg_task={result.avg_processing_ms:.0f}ms "
            f"success_rate={_fmt_ratio(_success_rate(result))}"
        ),
    ]
    if result.cancel_reason:
        lines.append(f"Cancel reason: {result.cancel_reason}")

    recovered = sum(1 for item in result.results.success if item.recovered)
    if recovered:
        lines.append(f"Recovered by auto-recovery: {recovered}")

    causes = Counter(
        (item.error_kind.value if item.error_kind else "unclassified")
        for item in result.results.failed
    )
    lines.append("Failure causes: " + (_fmt_key_value(causes) or "none"))

    if result.errors:
        lines.append("Recent errors:")
        lines.extend(f"  {error}" for error in result.errors[-_MAX_ERRORS_SHOWN:])
    if result.results_files:
        lines.append(f"Spilled result files: {len(result.results_files)}")
        lines.extend(f"  {path}" for path in result.results_files)
    if result.final_memory_rss_bytes is not None:
        lines.append(f"Final memory: {result.final_memory_rss_bytes / (1024 * 1024):.1f}MB")
    return lines


def render_progress_line(job_id: str, progress: ProgressSnapshot, total: int) -> str:
    eta = f"{progress.eta_seconds}s" if progress.eta_seconds is not None else "n/a"
    return (
        f"{job_id} {render_progress_bar(progress.percentage)} {progress.percentage}% "
        f"({progress.processed}/{total}) eta={eta}"
    )


def render_history_lines(entries: Iterable[JobHistoryEntry]) -> list[str]:
    lines: list[str] = []
    for entry in entries:
        started = entry.started_at.isoformat() if entry.started_at else "-"
        line = (
            f"{entry.job_id} kind={entry.kind} status={entry.status.value} "
            f"total={entry.total_tasks} success={entry.completed_tasks} "
            f"failed={entry.failed_tasks} skipped={entry.skipped_tasks} "
            f"started={started} duration={_fmt_seconds(entry.duration_seconds)}"
        )
        if entry.cancel_reason:
            line += f" reason={entry.cancel_reason!r}"
        lines.append(line)
    return lines or ["No jobs in history."]


def _success_rate(result: JobResult) -> float | None:
    processed = result.processed
    if processed == 0:
        return None
    return result.completed_tasks / processed


def _fmt_key_value(values: Mapping[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(values.items()))


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value * 100:.1f}%"


def _fmt_seconds(value: float | None) -> str:
    if value is None:
        return "-"
    if value < 60:
        return f"{value:.1f}s"
    minutes, seconds = divmod(int(value), 60)
    return f"{minutes}m{seconds:02d}s"
