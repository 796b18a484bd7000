"""Progress and ETA derived from job counters."""

from __future__ import annotations

from batch_control.engine.models import Job, ProgressSnapshot


def compute_progress(job: Job) -> ProgressSnapshot:
    """Pure function of the job's counters and running mean duration."""

    total = job.total_tasks
    processed = job.processed
    remaining = max(0, total - processed)
    percentage = round(100 * processed / total) if total > 0 else 100

    if processed == 0:
        eta_seconds = None
    else:
        eta_seconds = round(job.metrics.avg_processing_ms * remaining / 1000)

    return ProgressSnapshot(
        percentage=percentage,
        processed=processed,
        remaining=remaining,
        eta_seconds=eta_seconds,
    )


def render_progress_bar(percentage: int, *, width: int = 30) -> str:
    """Text progress bar, e.g. ``[#####-----]``."""

    bounded = min(100, max(0, percentage))
    filled = round(width * bounded / 100)
    return "[" + "#" * filled + "-" * (width - filled) + "]"
