"""Task record storage backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlmodel import Session, SQLModel, col, create_engine, select

from batch_control.engine.models import Task, TaskOutcome, TaskOutcomeStatus, from_iso, utc_now
from batch_control.records.sqlmodel_models import TaskOutcomeRecord, TaskRecord

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """Persistent record storage consumed by the batch executor."""

    def read(self, kind: str) -> list[Task]:
        """Return tasks registered for ``kind`` in insertion order."""

    def write(self, task_id: str, outcome: TaskOutcome) -> None:
        """Record the final outcome of one task."""


@dataclass(slots=True)
class TaskOutcomeView:
    """Recorded outcome row."""

    outcome_id: int
    task_id: str
    status: str
    retry_count: int
    error: str | None
    reason: str | None
    error_kind: str | None
    data: dict[str, Any]
    recorded_at: datetime


class SQLiteRecordStore:
    """Task records and outcome log in one SQLite file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
        )

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[TaskRecord.__table__, TaskOutcomeRecord.__table__],  # type: ignore[attr-defined]
        )

    def add_tasks(self, kind: str, tasks: Iterable[Task]) -> int:
        """Insert or update task rows; returns how many were written."""

        now = utc_now()
        written = 0
        with Session(self.engine) as session:
            for task in tasks:
                row = session.get(TaskRecord, task.task_id)
                if row is None:
                    row = TaskRecord(
                        task_id=task.task_id,
                        kind=kind,
                        created_at=now,
                        updated_at=now,
                    )
                row.kind = kind
                row.payload_json = json.dumps(dict(task.payload), ensure_ascii=False)
                row.current_state = task.current_state
                row.last_failure_at = task.last_failure_at
                row.last_success_at = task.last_success_at
                row.updated_at = now
                session.add(row)
                written += 1
            session.commit()
        return written

    def read(self, kind: str) -> list[Task]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(TaskRecord.kind == kind)
                .order_by(col(TaskRecord.created_at), col(TaskRecord.task_id)),
            ).all()
        return [_to_task(row) for row in rows]

    def write(self, task_id: str, outcome: TaskOutcome) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                TaskOutcomeRecord(
                    task_id=task_id,
                    status=outcome.status.value,
                    retry_count=outcome.retry_count,
                    error=outcome.error,
                    reason=outcome.reason,
                    error_kind=outcome.error_kind.value if outcome.error_kind else None,
                    data_json=json.dumps(outcome.data, ensure_ascii=False, default=str),
                    recorded_at=now,
                ),
            )
            row = session.get(TaskRecord, task_id)
            if row is not None:
                if outcome.status is TaskOutcomeStatus.SUCCESS:
                    row.last_success_at = now.timestamp()
                    new_state = outcome.data.get("current_state")
                    if isinstance(new_state, str):
                        row.current_state = new_state
                elif outcome.status is TaskOutcomeStatus.FAILED:
                    row.last_failure_at = now.timestamp()
                row.updated_at = now
                session.add(row)
            session.commit()

    def list_outcomes(
        self,
        *,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskOutcomeView]:
        """Most recent outcomes first."""

        with Session(self.engine) as session:
            query = select(TaskOutcomeRecord)
            if task_id is not None:
                query = query.where(TaskOutcomeRecord.task_id == task_id)
            rows = session.exec(
                query.order_by(col(TaskOutcomeRecord.outcome_id).desc()).limit(max(1, limit)),
            ).all()
        return [_to_outcome_view(row) for row in rows]


def import_tasks_from_json(store: SQLiteRecordStore, kind: str, path: Path) -> int:
    """Load tasks from a JSON list (or ``{"tasks": [...]}``) into the store."""

    raw = json.loads(path.read_text("utf-8"))
    items = raw.get("tasks") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise ValueError(f"{path}: expected a JSON list of tasks or an object with 'tasks'.")
    tasks = [parse_task(item, index=index) for index, item in enumerate(items)]
    count = store.add_tasks(kind, tasks)
    logger.info("Imported %d %s task(s) from %s", count, kind, path)
    return count


def parse_task(item: Any, *, index: int = 0) -> Task:
    if not isinstance(item, Mapping):
        raise ValueError(f"Task #{index} must be a JSON object.")
    task_id = item.get("task_id") or item.get("id")
    if not task_id:
        raise ValueError(f"Task #{index} has no task_id.")
    payload = item.get("payload")
    if payload is None:
        payload = {
            key: value
            for key, value in item.items()
            if key not in {"task_id", "id", "current_state", "last_failure_at", "last_success_at"}
        }
    if not isinstance(payload, Mapping):
        raise ValueError(f"Task #{index} payload must be a JSON object.")
    return Task(
        task_id=str(task_id),
        payload=dict(payload),
        current_state=item.get("current_state"),
        last_failure_at=float(item.get("last_failure_at") or 0.0),
        last_success_at=float(item.get("last_success_at") or 0.0),
    )


def _to_task(row: TaskRecord) -> Task:
    return Task(
        task_id=row.task_id,
        payload=json.loads(row.payload_json or "{}"),
        current_state=row.current_state,
        last_failure_at=row.last_failure_at,
        last_success_at=row.last_success_at,
    )


def _to_outcome_view(row: TaskOutcomeRecord) -> TaskOutcomeView:
    recorded_at = row.recorded_at
    if isinstance(recorded_at, str):
        recorded_at = from_iso(recorded_at) or utc_now()
    return TaskOutcomeView(
        outcome_id=row.outcome_id or 0,
        task_id=row.task_id,
        status=row.status,
        retry_count=row.retry_count,
        error=row.error,
        reason=row.reason,
        error_kind=row.error_kind,
        data=json.loads(row.data_json or "{}"),
        recorded_at=recorded_at,
    )
