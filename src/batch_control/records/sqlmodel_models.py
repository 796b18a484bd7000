"""SQLModel ORM tables for task records and their outcomes."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskRecord(SQLModel, table=True):
    __tablename__ = "batch_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_batch_tasks_kind_created", "kind", "created_at"),)

    task_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    current_state: str | None = None
    last_failure_at: float = 0.0
    last_success_at: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskOutcomeRecord(SQLModel, table=True):
    __tablename__ = "batch_task_outcomes"  # type: ignore[bad-override]

    outcome_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    status: str = Field(index=True)
    retry_count: int = 0
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    reason: str | None = None
    error_kind: str | None = None
    data_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
