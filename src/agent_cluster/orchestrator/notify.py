"""Outbound notification channel.

Delivery is best effort: failures are logged, never retried and never raised
into the orchestrator.
"""

from __future__ import annotations

import logging
from typing import Protocol

from agent_cluster.http.client import HttpClient
from agent_cluster.orchestrator.models import Notification, NotificationPriority

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    NotificationPriority.LOW: logging.DEBUG,
    NotificationPriority.MEDIUM: logging.INFO,
    NotificationPriority.HIGH: logging.WARNING,
}


class Notifier(Protocol):
    def send(self, notification: Notification) -> bool: ...


class LogNotifier:
    """Fallback channel used when no webhook is configured."""

    def send(self, notification: Notification) -> bool:
        logger.log(
            _LOG_LEVELS.get(notification.priority, logging.INFO),
            "[%s] %s: %s",
            notification.type.value,
            notification.title,
            notification.message,
        )
        return True


class WebhookNotifier:
    """POST the JSON notification payload to a webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        client: HttpClient | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self._client = client or HttpClient()

    def send(self, notification: Notification) -> bool:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        try:
            result = self._client.post_json(self.url, notification.to_payload(), headers=headers)
        except Exception:  # noqa: BLE001
            logger.exception("Notification %s could not be sent", notification.type.value)
            return False
        if not result.is_success:
            logger.warning(
                "Notification %s delivery failed: %s",
                notification.type.value,
                result.error,
            )
            return False
        logger.debug("Notification %s delivered", notification.type.value)
        return True

    def close(self) -> None:
        self._client.close()


def build_notifier(webhook_url: str | None, token: str | None = None) -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url, token=token)
    return LogNotifier()
