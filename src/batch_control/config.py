"""Runtime configuration for the batch engine, persistence and alerting."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MAX_MEMORY_BYTES = 1024 * 1024 * 1024


@dataclass(slots=True)
class EngineSettings:
    """Defaults for batch runs; individual runs may override them via BatchOptions."""

    concurrency: int = 1
    batch_size: int = 10
    retry_enabled: bool = True
    delay_between_batches_seconds: float = 5.0
    delay_between_tasks_seconds: float = 3.0
    auto_recovery: bool = True
    recovery_delay_seconds: float = 3.0
    recovery_max_retry_count: int = 3
    task_timeout_seconds: float = 300.0
    cancel_grace_seconds: float = 10.0
    monitor_interval_seconds: float = 5.0
    stuck_after_seconds: float = 30.0
    pause_poll_seconds: float = 1.0
    persist_interval_seconds: float = 5.0
    max_results_in_memory: int = 1_000
    results_keep_recent: int = 100
    max_errors_in_memory: int = 200
    history_size: int = 100


@dataclass(slots=True)
class ResourceSettings:
    """Adaptive concurrency thresholds."""

    adaptive_concurrency: bool = True
    max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES
    max_concurrency: int = 5


@dataclass(slots=True)
class PersistenceSettings:
    """Where state snapshots, spilled results and progress files live."""

    state_file: Path = Path("batch-jobs-state.json")
    results_dir: Path = Path("batch-results")
    progress_dir: Path = Path("batch-progress")


@dataclass(slots=True)
class NotificationSettings:
    """Alert channel settings; each purpose-specific alert can be toggled."""

    enabled: bool = False
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    rate_limit_max: int = 20
    rate_limit_window_seconds: float = 60.0
    request_timeout_seconds: float = 10.0
    notify_critical: bool = True
    notify_max_retry: bool = True
    notify_payment_delay: bool = True
    notify_job_failures: bool = True
    job_failure_threshold: int = 1
    worker_id: str = "batch-control"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".batch_control.db")
    log_level: str = "INFO"
    engine: EngineSettings = field(default_factory=EngineSettings)
    resources: ResourceSettings = field(default_factory=ResourceSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local runs."""

        return cls(
            db_path=db_path or Path(os.getenv("BATCH_CONTROL_DB_PATH", ".batch_control.db")),
            log_level=os.getenv("BATCH_CONTROL_LOG_LEVEL", "INFO").upper(),
            engine=EngineSettings(
                concurrency=int(os.getenv("BATCH_CONTROL_CONCURRENCY", "1")),
                batch_size=int(os.getenv("BATCH_CONTROL_BATCH_SIZE", "10")),
                retry_enabled=_env_bool("BATCH_CONTROL_RETRY_ENABLED", default=True),
                delay_between_batches_seconds=float(
                    os.getenv("BATCH_CONTROL_DELAY_BETWEEN_BATCHES_SECONDS", "5.0"),
                ),
                delay_between_tasks_seconds=float(
                    os.getenv("BATCH_CONTROL_DELAY_BETWEEN_TASKS_SECONDS", "3.0"),
                ),
                auto_recovery=_env_bool("BATCH_CONTROL_AUTO_RECOVERY", default=True),
                recovery_delay_seconds=float(
                    os.getenv("BATCH_CONTROL_RECOVERY_DELAY_SECONDS", "3.0"),
                ),
                recovery_max_retry_count=int(
                    os.getenv("BATCH_CONTROL_RECOVERY_MAX_RETRY_COUNT", "3"),
                ),
                task_timeout_seconds=float(
                    os.getenv("BATCH_CONTROL_TASK_TIMEOUT_SECONDS", "300"),
                ),
                cancel_grace_seconds=float(
                    os.getenv("BATCH_CONTROL_CANCEL_GRACE_SECONDS", "10"),
                ),
                monitor_interval_seconds=float(
                    os.getenv("BATCH_CONTROL_MONITOR_INTERVAL_SECONDS", "5"),
                ),
                stuck_after_seconds=float(
                    os.getenv("BATCH_CONTROL_STUCK_AFTER_SECONDS", "30"),
                ),
                persist_interval_seconds=float(
                    os.getenv("BATCH_CONTROL_PERSIST_INTERVAL_SECONDS", "5"),
                ),
                max_results_in_memory=int(
                    os.getenv("BATCH_CONTROL_MAX_RESULTS_IN_MEMORY", "1000"),
                ),
                history_size=int(os.getenv("BATCH_CONTROL_HISTORY_SIZE", "100")),
            ),
            resources=ResourceSettings(
                adaptive_concurrency=_env_bool(
                    "BATCH_CONTROL_ADAPTIVE_CONCURRENCY",
                    default=True,
                ),
                max_memory_bytes=int(
                    os.getenv("BATCH_CONTROL_MAX_MEMORY_BYTES", str(DEFAULT_MAX_MEMORY_BYTES)),
                ),
            ),
            persistence=PersistenceSettings(
                state_file=Path(
                    os.getenv("BATCH_CONTROL_STATE_FILE", "batch-jobs-state.json"),
                ),
                results_dir=Path(os.getenv("BATCH_CONTROL_RESULTS_DIR", "batch-results")),
                progress_dir=Path(os.getenv("BATCH_CONTROL_PROGRESS_DIR", "batch-progress")),
            ),
            notifications=NotificationSettings(
                enabled=_env_bool("BATCH_CONTROL_TELEGRAM_ENABLED", default=False),
                telegram_bot_token=os.getenv("BATCH_CONTROL_TELEGRAM_BOT_TOKEN") or None,
                telegram_chat_id=os.getenv("BATCH_CONTROL_TELEGRAM_CHAT_ID") or None,
                rate_limit_max=int(os.getenv("BATCH_CONTROL_TELEGRAM_RATE_LIMIT", "20")),
                notify_critical=_env_bool("BATCH_CONTROL_NOTIFY_CRITICAL", default=True),
                notify_max_retry=_env_bool("BATCH_CONTROL_NOTIFY_MAX_RETRY", default=True),
                notify_payment_delay=_env_bool(
                    "BATCH_CONTROL_NOTIFY_PAYMENT_DELAY",
                    default=True,
                ),
                notify_job_failures=_env_bool(
                    "BATCH_CONTROL_NOTIFY_JOB_FAILURES",
                    default=True,
                ),
                job_failure_threshold=int(
                    os.getenv("BATCH_CONTROL_JOB_FAILURE_THRESHOLD", "1"),
                ),
                worker_id=os.getenv("BATCH_CONTROL_WORKER_ID", "batch-control"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        engine = self.engine
        if engine.concurrency < 1:
            raise ValueError("BATCH_CONTROL_CONCURRENCY must be >= 1.")
        if engine.batch_size < 1:
            raise ValueError("BATCH_CONTROL_BATCH_SIZE must be >= 1.")
        if engine.task_timeout_seconds <= 0:
            raise ValueError("BATCH_CONTROL_TASK_TIMEOUT_SECONDS must be > 0.")
        if engine.cancel_grace_seconds <= 0:
            raise ValueError("BATCH_CONTROL_CANCEL_GRACE_SECONDS must be > 0.")
        if engine.monitor_interval_seconds <= 0:
            raise ValueError("BATCH_CONTROL_MONITOR_INTERVAL_SECONDS must be > 0.")
        if engine.delay_between_batches_seconds < 0 or engine.delay_between_tasks_seconds < 0:
            raise ValueError("Batch/task delays must be >= 0.")
        if engine.max_results_in_memory < engine.results_keep_recent:
            raise ValueError(
                "BATCH_CONTROL_MAX_RESULTS_IN_MEMORY must be >= the recent-results tail size.",
            )
        if engine.history_size < 1:
            raise ValueError("BATCH_CONTROL_HISTORY_SIZE must be >= 1.")
        if self.resources.max_memory_bytes <= 0:
            raise ValueError("BATCH_CONTROL_MAX_MEMORY_BYTES must be > 0.")
        if self.notifications.rate_limit_max < 1:
            raise ValueError("BATCH_CONTROL_TELEGRAM_RATE_LIMIT must be >= 1.")
        if self.notifications.enabled and not (
            self.notifications.telegram_bot_token and self.notifications.telegram_chat_id
        ):
            raise ValueError(
                "Telegram alerts are enabled but BATCH_CONTROL_TELEGRAM_BOT_TOKEN or "
                "BATCH_CONTROL_TELEGRAM_CHAT_ID is missing.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
