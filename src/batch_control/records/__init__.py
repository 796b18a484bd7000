"""Persistent task records."""

from batch_control.records.repository import (
    RecordStore,
    SQLiteRecordStore,
    TaskOutcomeView,
    import_tasks_from_json,
    parse_task,
)

__all__ = [
    "RecordStore",
    "SQLiteRecordStore",
    "TaskOutcomeView",
    "import_tasks_from_json",
    "parse_task",
]
