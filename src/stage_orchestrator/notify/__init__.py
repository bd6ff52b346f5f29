"""Outcome notifications."""

from stage_orchestrator.notify.dispatcher import (
    CommandTransport,
    LogTransport,
    NotificationDeliveryError,
    NotificationDispatcher,
    NotificationTransport,
)

__all__ = [
    "CommandTransport",
    "LogTransport",
    "NotificationDeliveryError",
    "NotificationDispatcher",
    "NotificationTransport",
]
