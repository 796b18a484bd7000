"""Operator alerts for batch runs."""

from batch_control.notifications.gateway import (
    NotificationGateway,
    NotificationType,
    truncate_message,
)
from batch_control.notifications.telegram import (
    NotificationTransport,
    NullTransport,
    TelegramTransport,
)

__all__ = [
    "NotificationGateway",
    "NotificationTransport",
    "NotificationType",
    "NullTransport",
    "TelegramTransport",
    "truncate_message",
]
