"""Rate-limited, purpose-specific operator alerts."""

from __future__ import annotations

import html
import logging
import time
from collections import deque
from collections.abc import Callable
from enum import Enum

from batch_control.config import NotificationSettings
from batch_control.engine.models import JobResult, utc_now
from batch_control.notifications.telegram import (
    NotificationTransport,
    NullTransport,
    TelegramTransport,
)

logger = logging.getLogger(__name__)

_TRUNCATION_SUFFIX = "\n..."
_ERROR_PREVIEW_CHARS = 200
_MAX_FAILED_TASKS_LISTED = 10


class NotificationType(str, Enum):
    """Alert purposes, each toggleable in settings."""

    CRITICAL = "critical"
    MAX_RETRY = "max_retry"
    PAYMENT_DELAY = "payment_delay"
    JOB_FAILURES = "job_failures"


class NotificationGateway:
    """Best-effort alert sender: never raises into caller logic.

    Messages over the sliding-window budget are dropped, not queued.
    """

    def __init__(
        self,
        transport: NotificationTransport | None,
        *,
        settings: NotificationSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or NotificationSettings(enabled=transport is not None)
        self.transport = transport
        self.enabled = self.settings.enabled and transport is not None
        self._clock = clock
        self._sent_at: deque[float] = deque()
        self.sent_count = 0
        self.dropped_count = 0

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> NotificationGateway:
        if not settings.enabled:
            return cls(NullTransport(), settings=settings)
        if not (settings.telegram_bot_token and settings.telegram_chat_id):
            logger.warning("Telegram alerts enabled without bot token/chat id; alerts disabled")
            return cls(None, settings=settings)
        transport = TelegramTransport(
            bot_token=settings.telegram_bot_token,
            chat_id=settings.telegram_chat_id,
            timeout_seconds=settings.request_timeout_seconds,
        )
        return cls(transport, settings=settings)

    def is_type_enabled(self, notification_type: NotificationType) -> bool:
        toggles = {
            NotificationType.CRITICAL: self.settings.notify_critical,
            NotificationType.MAX_RETRY: self.settings.notify_max_retry,
            NotificationType.PAYMENT_DELAY: self.settings.notify_payment_delay,
            NotificationType.JOB_FAILURES: self.settings.notify_job_failures,
        }
        return toggles.get(notification_type, True)

    async def notify(
        self,
        text: str,
        *,
        notification_type: NotificationType | None = None,
    ) -> bool:
        """Send ``text`` unless disabled, toggled off or rate-limited."""

        if not self.enabled or self.transport is None:
            return False
        if notification_type is not None and not self.is_type_enabled(notification_type):
            return False
        try:
            if self._is_rate_limited():
                self.dropped_count += 1
                logger.warning("Notification rate limit reached; message dropped")
                return False
            delivered = await self.transport.send(
                truncate_message(text, self.transport.max_message_chars),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Notification delivery failed")
            return False
        if delivered:
            self._sent_at.append(self._clock())
            self.sent_count += 1
        return delivered

    async def notify_critical_error(
        self,
        *,
        task_id: str,
        action: str,
        error: str | None,
        severity: str = "critical",
    ) -> bool:
        icon = "\U0001f534" if severity == "critical" else "\U0001f7e0"
        title = "Critical error" if severity == "critical" else "Error"
        lines = [
            f"{icon} <b>{title}</b>",
            "",
            f"Task: <code>{_escape(task_id)}</code>",
            f"Action: {_escape(action)}",
            f"Error: {_escape(_preview(error))}",
            f"Worker: {_escape(self.settings.worker_id)}",
            f"Time: {_timestamp()}",
            "",
            "Manual check required.",
        ]
        return await self.notify("\n".join(lines), notification_type=NotificationType.CRITICAL)

    async def notify_max_retry_exceeded(
        self,
        *,
        task_id: str,
        action: str,
        error: str | None,
        retry_count: int,
    ) -> bool:
        lines = [
            "\U0001f501 <b>Max retries exceeded</b>",
            "",
            f"Task: <code>{_escape(task_id)}</code>",
            f"Action: {_escape(action)}",
            f"Retries: {retry_count}",
            f"Last error: {_escape(_preview(error))}",
            f"Worker: {_escape(self.settings.worker_id)}",
            f"Time: {_timestamp()}",
        ]
        return await self.notify("\n".join(lines), notification_type=NotificationType.MAX_RETRY)

    async def notify_payment_delay(self, *, task_id: str, hours_elapsed: float) -> bool:
        lines = [
            f"⏰ <b>Payment pending for over {hours_elapsed:g}h</b>",
            "",
            f"Task: <code>{_escape(task_id)}</code>",
            f"Worker: {_escape(self.settings.worker_id)}",
            f"Time: {_timestamp()}",
        ]
        return await self.notify(
            "\n".join(lines),
            notification_type=NotificationType.PAYMENT_DELAY,
        )

    async def notify_job_failures(self, result: JobResult) -> bool:
        """Summarize a finished job whose failures reach the configured threshold."""

        if result.failed_tasks < max(1, self.settings.job_failure_threshold):
            return False
        lines = [
            f"⚠️ <b>Batch job finished with {result.failed_tasks} failed task(s)</b>",
            "",
            f"Job: <code>{_escape(result.job_id)}</code> ({_escape(result.kind)})",
            f"Status: {result.status.value}",
            (
                f"Success: {result.completed_tasks} / Failed: {result.failed_tasks} / "
                f"Skipped: {result.skipped_tasks} / Total: {result.total_tasks}"
            ),
        ]
        failed = result.results.failed[-_MAX_FAILED_TASKS_LISTED:]
        if failed:
            lines.append("")
            lines.extend(
                f"- <code>{_escape(item.task_id)}</code>: {_escape(_preview(item.error))}"
                for item in failed
            )
        lines.append(f"Time: {_timestamp()}")
        return await self.notify(
            "\n".join(lines),
            notification_type=NotificationType.JOB_FAILURES,
        )

    def _is_rate_limited(self) -> bool:
        now = self._clock()
        window = self.settings.rate_limit_window_seconds
        while self._sent_at and now - self._sent_at[0] >= window:
            self._sent_at.popleft()
        return len(self._sent_at) >= self.settings.rate_limit_max


def truncate_message(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 6] + _TRUNCATION_SUFFIX


def _escape(value: str | None) -> str:
    return html.escape(value or "Unknown", quote=False)


def _preview(error: str | None) -> str:
    return (error or "unknown error")[:_ERROR_PREVIEW_CHARS]


def _timestamp() -> str:
    return utc_now().strftime("%Y-%m-%d %H:%M:%S UTC")
