"""Notifier implementations."""

import logging
from typing import Any

import httpx

from remedy.clients.base import Notifier
from remedy.plans.notifications import ALERT_CHANNEL, render_notification

logger = logging.getLogger(__name__)


class LoggingNotifier(Notifier):
    """Writes notifications to the log; alerts go out at CRITICAL."""

    async def send(self, channel: str, template: str, context: dict[str, Any]) -> None:
        subject, body = render_notification(template, context)
        level = logging.CRITICAL if channel == ALERT_CHANNEL else logging.INFO
        logger.log(level, f"[{channel}] {subject}: {body}")


class WebhookNotifier(Notifier):
    """Posts notifications as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def send(self, channel: str, template: str, context: dict[str, Any]) -> None:
        subject, body = render_notification(template, context)
        payload = {
            "channel": channel,
            "template": template,
            "subject": subject,
            "text": body,
            "context": {key: _jsonable(value) for key, value in context.items()},
        }

        if self._client is not None:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            return

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, list | tuple):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    return str(value)
