"""Booking notifications."""

from medbook.notifications.notifier import (
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
    build_notifier,
)

__all__ = ["LoggingNotifier", "Notifier", "WebhookNotifier", "build_notifier"]
