"""Domain models for batch jobs, tasks and their outcomes."""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from batch_control.config import EngineSettings
from batch_control.engine.errors import InvalidOptionsError


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str | None) -> datetime | None:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED},
)


class TaskOutcomeStatus(str, Enum):
    """Per-task outcome reported to the job manager."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(str, Enum):
    """Normalized error kinds used by retry policy."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    PERMANENT = "permanent"
    DEFAULT = "default"


class Priority(str, Enum):
    """Initial task ordering policy."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class JobEventType(str, Enum):
    """Lifecycle events emitted by the job manager."""

    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_PAUSING = "job_pausing"
    JOB_PAUSED = "job_paused"
    JOB_RESUMED = "job_resumed"
    JOB_CANCELLING = "job_cancelling"
    JOB_COMPLETED = "job_completed"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_STUCK = "task_stuck"
    MEMORY_WARNING = "memory_warning"


# Task states meaning "nothing left to do" for the well-known job kinds.
DEFAULT_SKIP_STATES: dict[str, tuple[str, ...]] = {
    "pause": ("paused",),
    "resume": ("active",),
}


@dataclass(slots=True, frozen=True)
class Task:
    """One externally-defined unit of work; read-only to the engine."""

    task_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    current_state: str | None = None
    last_failure_at: float = 0.0
    last_success_at: float = 0.0


@dataclass(slots=True)
class TaskOutcome:
    """Final outcome of one task after the retry loop."""

    status: TaskOutcomeStatus
    retry_count: int = 0
    error: str | None = None
    reason: str | None = None
    error_kind: ErrorKind | None = None
    retryable: bool = True
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskResult:
    """Recorded task outcome with timing."""

    task_id: str
    status: TaskOutcomeStatus
    duration_ms: float
    retry_count: int = 0
    error: str | None = None
    reason: str | None = None
    error_kind: ErrorKind | None = None
    retryable: bool = True
    recovered: bool = False
    info: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["error_kind"] = self.error_kind.value if self.error_kind else None
        return payload


@dataclass(slots=True)
class TaskInFlight:
    """Bookkeeping for a dispatched, not yet completed task."""

    task_id: str
    info: dict[str, Any]
    started_at: datetime
    started_monotonic: float
    stuck_reported: bool = False


@dataclass(slots=True)
class JobResults:
    """Recent per-task results kept in memory, split by outcome."""

    success: list[TaskResult] = field(default_factory=list)
    failed: list[TaskResult] = field(default_factory=list)
    skipped: list[TaskResult] = field(default_factory=list)

    def for_status(self, status: TaskOutcomeStatus) -> list[TaskResult]:
        if status is TaskOutcomeStatus.SUCCESS:
            return self.success
        if status is TaskOutcomeStatus.FAILED:
            return self.failed
        return self.skipped

    def total(self) -> int:
        return len(self.success) + len(self.failed) + len(self.skipped)

    def counts(self) -> dict[str, int]:
        return {
            "success_count": len(self.success),
            "failed_count": len(self.failed),
            "skipped_count": len(self.skipped),
        }

    def copy(self) -> JobResults:
        return JobResults(
            success=list(self.success),
            failed=list(self.failed),
            skipped=list(self.skipped),
        )


@dataclass(slots=True)
class JobMetrics:
    """Running metrics sampled during a job."""

    avg_processing_ms: float = 0.0
    memory_rss_bytes: int | None = None
    memory_ratio: float | None = None
    cpu_percent: float | None = None
    final_memory_rss_bytes: int | None = None
    final_cpu_percent: float | None = None


@dataclass(slots=True, frozen=True)
class ProgressSnapshot:
    """Derived progress figures for one job."""

    percentage: int
    processed: int
    remaining: int
    eta_seconds: int | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class RetryStrategy:
    """Retry tuple associated with a classified error kind."""

    max_retries: int
    delay_seconds: float
    exponential_backoff: bool

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        if self.exponential_backoff:
            return self.delay_seconds * (2 ** max(0, attempt - 1))
        return self.delay_seconds


@dataclass(slots=True, frozen=True)
class BatchOptions:
    """Validated configuration for one batch run."""

    kind: str = "batch"
    concurrency: int = 1
    batch_size: int = 10
    retry_enabled: bool = True
    delay_between_batches_seconds: float = 5.0
    delay_between_tasks_seconds: float = 3.0
    auto_recovery: bool = True
    recovery_delay_seconds: float = 3.0
    recovery_max_retry_count: int = 3
    save_progress: bool = True
    priority: Priority = Priority.NORMAL
    task_timeout_seconds: float = 300.0
    skip_states: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.priority, Priority):
            try:
                object.__setattr__(self, "priority", Priority(str(self.priority).lower()))
            except ValueError as error:
                raise InvalidOptionsError(
                    f"Unknown priority {self.priority!r}; expected low, normal or high.",
                ) from error
        if self.skip_states is not None and not isinstance(self.skip_states, tuple):
            object.__setattr__(self, "skip_states", tuple(self.skip_states))
        if self.concurrency < 1:
            raise InvalidOptionsError("concurrency must be >= 1.")
        if self.batch_size < 1:
            raise InvalidOptionsError("batch_size must be >= 1.")
        if self.delay_between_batches_seconds < 0 or self.delay_between_tasks_seconds < 0:
            raise InvalidOptionsError("Batch/task delays must be >= 0.")
        if self.recovery_delay_seconds < 0:
            raise InvalidOptionsError("recovery_delay_seconds must be >= 0.")
        if self.recovery_max_retry_count < 0:
            raise InvalidOptionsError("recovery_max_retry_count must be >= 0.")
        if self.task_timeout_seconds <= 0:
            raise InvalidOptionsError("task_timeout_seconds must be > 0.")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> BatchOptions:
        """Build options from loose input, rejecting unknown keys."""

        known = {item.name for item in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidOptionsError(f"Unknown batch option(s): {', '.join(unknown)}")
        return cls(**dict(values))

    @classmethod
    def from_settings(cls, settings: EngineSettings, **overrides: Any) -> BatchOptions:
        """Options seeded from engine settings, with per-run overrides."""

        base: dict[str, Any] = {
            "concurrency": settings.concurrency,
            "batch_size": settings.batch_size,
            "retry_enabled": settings.retry_enabled,
            "delay_between_batches_seconds": settings.delay_between_batches_seconds,
            "delay_between_tasks_seconds": settings.delay_between_tasks_seconds,
            "auto_recovery": settings.auto_recovery,
            "recovery_delay_seconds": settings.recovery_delay_seconds,
            "recovery_max_retry_count": settings.recovery_max_retry_count,
            "task_timeout_seconds": settings.task_timeout_seconds,
        }
        base.update(overrides)
        return cls.from_mapping(base)

    def resolved_skip_states(self) -> tuple[str, ...]:
        if self.skip_states is not None:
            return self.skip_states
        return DEFAULT_SKIP_STATES.get(self.kind, ())


@dataclass(slots=True)
class Job:
    """One orchestrated run; mutated only by JobManager."""

    job_id: str
    kind: str
    total_tasks: int
    options: BatchOptions
    status: JobStatus = JobStatus.PENDING
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    in_flight: dict[str, TaskInFlight] = field(default_factory=dict)
    current_task: TaskInFlight | None = None
    started_at: datetime = field(default_factory=utc_now)
    started_monotonic: float = 0.0
    ended_at: datetime | None = None
    cancel_requested: bool = False
    pause_requested: bool = False
    cancel_reason: str | None = None
    errors: deque[str] = field(default_factory=lambda: deque(maxlen=200))
    results: JobResults = field(default_factory=JobResults)
    results_files: list[str] = field(default_factory=list)
    metrics: JobMetrics = field(default_factory=JobMetrics)
    last_saved_monotonic: float = 0.0

    @property
    def processed(self) -> int:
        return self.completed_tasks + self.failed_tasks + self.skipped_tasks


@dataclass(slots=True)
class JobHistoryEntry:
    """Sanitized projection of a terminal job kept for introspection."""

    job_id: str
    kind: str
    status: JobStatus
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    started_at: datetime | None
    ended_at: datetime | None
    duration_seconds: float | None = None
    cancel_reason: str | None = None
    results_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status.value,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "skipped_tasks": self.skipped_tasks,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "cancel_reason": self.cancel_reason,
            "results_files": list(self.results_files),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> JobHistoryEntry:
        return cls(
            job_id=str(payload["job_id"]),
            kind=str(payload.get("kind", "")),
            status=JobStatus(payload.get("status", JobStatus.FAILED.value)),
            total_tasks=int(payload.get("total_tasks", 0)),
            completed_tasks=int(payload.get("completed_tasks", 0)),
            failed_tasks=int(payload.get("failed_tasks", 0)),
            skipped_tasks=int(payload.get("skipped_tasks", 0)),
            started_at=from_iso(payload.get("started_at")),
            ended_at=from_iso(payload.get("ended_at")),
            duration_seconds=payload.get("duration_seconds"),
            cancel_reason=payload.get("cancel_reason"),
            results_files=list(payload.get("results_files") or []),
        )


@dataclass(slots=True)
class JobResult:
    """Terminal report returned to the caller."""

    job_id: str
    kind: str
    status: JobStatus
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    skipped_tasks: int
    not_started: int
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    avg_processing_ms: float
    progress: ProgressSnapshot
    results: JobResults
    errors: list[str]
    cancel_reason: str | None = None
    results_files: list[str] = field(default_factory=list)
    final_memory_rss_bytes: int | None = None

    @property
    def processed(self) -> int:
        return self.completed_tasks + self.failed_tasks + self.skipped_tasks


@dataclass(slots=True)
class JobEvent:
    """Lifecycle event delivered to subscribed listeners."""

    event_type: JobEventType
    job_id: str
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
