"""Fire-and-forget booking notifications.

Notifications go to an automation webhook (one URL per event name under a
base URL). Delivery problems are logged and never reach the caller.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

APPOINTMENT_CONFIRMED = "appointment-confirmed"
APPOINTMENT_CANCELLED = "appointment-cancelled"
APPOINTMENT_RESCHEDULED = "appointment-rescheduled"
APPOINTMENT_EXPIRED = "appointment-expired"
REFUND_FAILED = "refund-failed"


class Notifier(ABC):
    """Abstract notification sink."""

    @abstractmethod
    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the log only. Used when no webhook is configured."""

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info(f"Notification {event}: {json.dumps(payload, default=str)}")


class WebhookNotifier(Notifier):
    """Posts JSON to ``{base_url}/{event}``."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        url = f"{self.base_url}/{event}"
        body = json.loads(json.dumps(payload, default=str))
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body)
            response.raise_for_status()
            logger.debug(f"Notification {event} delivered ({response.status_code})")
        except httpx.HTTPError as e:
            logger.warning(f"Notification {event} failed: {e}")


def build_notifier(webhook_url: str, timeout: float = 10.0) -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url, timeout=timeout)
    return LoggingNotifier()
