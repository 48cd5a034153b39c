"""Observability helpers for the rollout controller."""

from .health import HealthServer, StatusProvider  # noqa: F401
from .notifications import (  # noqa: F401
    EscalationDispatcher,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
)

__all__ = [
    "EscalationDispatcher",
    "HealthServer",
    "LoggingNotifier",
    "Notifier",
    "StatusProvider",
    "WebhookNotifier",
]
