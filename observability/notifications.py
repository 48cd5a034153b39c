"""Escalation channels used when a rollback cannot restore production."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence

import httpx

__all__ = ["EscalationDispatcher", "LoggingNotifier", "Notifier", "WebhookNotifier"]


class Notifier(Protocol):
    def send(self, subject: str, message: str, *, metadata: Mapping[str, Any] | None = None) -> None:
        """Deliver one alert."""


class LoggingNotifier:
    """Emit alerts as ``CRITICAL`` log records for log-based paging."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("bluegreen.escalation")

    def send(self, subject: str, message: str, *, metadata: Mapping[str, Any] | None = None) -> None:
        self._logger.critical("%s: %s", subject, message, extra={"fields": dict(metadata or {})})


class WebhookNotifier:
    """Post alerts to an incoming webhook (Slack, PagerDuty Events, Opsgenie...)."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def send(self, subject: str, message: str, *, metadata: Mapping[str, Any] | None = None) -> None:
        text = f"*{subject}*\n{message}" if subject else message
        if metadata:
            details = "\n".join(f"- {key}: {value}" for key, value in sorted(metadata.items()))
            text = f"{text}\n{details}"
        response = self._client.post(
            self._webhook_url,
            json={"text": text, "metadata": {k: str(v) for k, v in (metadata or {}).items()}},
            timeout=self._timeout,
        )
        response.raise_for_status()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class EscalationDispatcher:
    """Fan an alert out to every channel; a failing channel never blocks the others."""

    def __init__(
        self,
        notifiers: Sequence[Notifier] = (),
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._notifiers = tuple(notifiers)
        self._logger = logger or logging.getLogger("bluegreen.escalation")

    def dispatch(
        self,
        event: str,
        *,
        subject: str,
        message: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> int:
        """Send the alert and return how many channels accepted it."""

        if not self._notifiers:
            self._logger.warning(
                "No escalation channels configured; alert dropped",
                extra={"fields": {"event": event, "subject": subject}},
            )
            return 0
        delivered = 0
        for notifier in self._notifiers:
            try:
                notifier.send(subject, message, metadata=metadata)
            except Exception:
                self._logger.error(
                    "Escalation delivery failed",
                    exc_info=True,
                    extra={"fields": {"event": event, "channel": type(notifier).__name__}},
                )
            else:
                delivered += 1
        return delivered
