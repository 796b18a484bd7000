"""Durable JSON snapshots of job state, spilled results and progress files."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from batch_control.engine.models import (
    Job,
    JobHistoryEntry,
    JobResults,
    JobStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_SNAPSHOT_VERSION = 1
ABNORMAL_TERMINATION_REASON = "Abnormal termination"


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON to a temp file next to ``path`` and rename it into place."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    temp_path.replace(path)


def sanitize_job(job: Job) -> dict[str, Any]:
    """Small projection of an active job: counters only, no per-task results."""

    return {
        "job_id": job.job_id,
        "kind": job.kind,
        "status": job.status.value,
        "total_tasks": job.total_tasks,
        "completed_tasks": job.completed_tasks,
        "failed_tasks": job.failed_tasks,
        "skipped_tasks": job.skipped_tasks,
        "started_at": job.started_at.isoformat(),
        "cancel_reason": job.cancel_reason,
        "results": job.results.counts(),
        "results_files": list(job.results_files),
    }


class StatePersistence:
    """Best-effort snapshot of active jobs and bounded history.

    ``save`` never raises; ``restore`` reclassifies jobs that were still active in
    the previous snapshot as failed, since their in-memory task state is lost.
    """

    def __init__(self, state_file: Path, *, history_size: int = 100) -> None:
        self.state_file = state_file
        self.history_size = history_size

    def save(self, active_jobs: Iterable[Job], history: Iterable[JobHistoryEntry]) -> bool:
        try:
            payload = {
                "version": STATE_SNAPSHOT_VERSION,
                "saved_at": utc_now().isoformat(),
                "active_jobs": [sanitize_job(job) for job in active_jobs],
                "history": [entry.to_dict() for entry in history],
            }
            write_json_atomic(self.state_file, payload)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to save job state to %s", self.state_file)
            return False
        return True

    def restore(self) -> list[JobHistoryEntry]:
        if not self.state_file.exists():
            return []
        try:
            raw = json.loads(self.state_file.read_text("utf-8"))
        except (OSError, ValueError):
            logger.exception("Failed to read job state from %s", self.state_file)
            return []
        if not isinstance(raw, dict) or raw.get("version") != STATE_SNAPSHOT_VERSION:
            logger.warning("Job state version mismatch in %s, starting fresh", self.state_file)
            return []

        history: list[JobHistoryEntry] = []
        for item in raw.get("history") or []:
            try:
                history.append(JobHistoryEntry.from_dict(item))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed history entry: %r", item)

        abandoned = raw.get("active_jobs") or []
        if abandoned:
            logger.warning(
                "Found %d job(s) left active by a previous run; marking them failed",
                len(abandoned),
            )
        now = utc_now()
        recovered: list[JobHistoryEntry] = []
        for item in abandoned:
            try:
                entry = JobHistoryEntry.from_dict(item)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed active job entry: %r", item)
                continue
            entry.status = JobStatus.FAILED
            entry.ended_at = now
            entry.cancel_reason = ABNORMAL_TERMINATION_REASON
            recovered.append(entry)

        restored = (recovered + history)[: self.history_size]
        logger.info("Job state restored (history=%d)", len(restored))
        return restored


class ResultSpillStore:
    """Writes evicted per-task results to JSON files, one file per eviction."""

    def __init__(self, results_dir: Path) -> None:
        self.results_dir = results_dir
        self._sequence = 0

    def spill(self, job_id: str, results: JobResults) -> Path:
        self._sequence += 1
        stamp = utc_now().strftime("%Y%m%dT%H%M%S")
        path = self.results_dir / f"batch-results-{job_id}-{stamp}-{self._sequence:04d}.json"
        write_json_atomic(
            path,
            {
                "job_id": job_id,
                "success": [result.to_dict() for result in results.success],
                "failed": [result.to_dict() for result in results.failed],
                "skipped": [result.to_dict() for result in results.skipped],
            },
        )
        logger.info("Spilled %d results of job %s to %s", results.total(), job_id, path)
        return path


class ProgressSnapshotWriter:
    """Per-job progress file, overwritten after every batch."""

    def __init__(self, progress_dir: Path) -> None:
        self.progress_dir = progress_dir

    def path_for(self, job_id: str) -> Path:
        return self.progress_dir / f"{job_id}.json"

    def write(self, job_id: str, payload: dict[str, Any]) -> bool:
        try:
            write_json_atomic(
                self.path_for(job_id),
                {"job_id": job_id, **payload, "updated_at": utc_now().isoformat()},
            )
        except OSError:
            logger.exception("Failed to write progress snapshot for job %s", job_id)
            return False
        return True
